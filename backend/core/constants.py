"""Constants and enums for the email schedule engine."""

from enum import Enum


class ScheduleType(str, Enum):
    """How a schedule decides when it is due."""

    DATE_RANGE = "DATE_RANGE"
    RECURRING = "RECURRING"
    SPECIFIC_DATES = "SPECIFIC_DATES"


class ExecutionStatus(str, Enum):
    """Schedule execution status."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_EXECUTION_STATUSES = (
    ExecutionStatus.COMPLETED.value,
    ExecutionStatus.FAILED.value,
    ExecutionStatus.CANCELLED.value,
)


class EmailCategory(str, Enum):
    """Categories the downstream classifier assigns to emails."""

    APPOINTMENT = "APPOINTMENT"
    INVOICE = "INVOICE"
    WORK = "WORK"
    PERSONAL = "PERSONAL"
    NEWSLETTER = "NEWSLETTER"
    MARKETING = "MARKETING"
    OTHER = "OTHER"


class Priority(str, Enum):
    """Processing priority override for a category or sender."""

    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class PollerState(str, Enum):
    """Scheduler poller state."""

    IDLE = "idle"
    PROCESSING = "processing"
