"""Processing schedule schemas.

These are the request/response contracts the (external) API layer speaks
when it creates, validates and inspects schedules. All datetimes are
normalised to naive UTC on the way in.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from core.constants import ScheduleType
from core.utils import to_naive_utc


def _naive(value):
    if isinstance(value, datetime):
        return to_naive_utc(value)
    return value


class ScheduleBase(BaseModel):
    """Fields shared by create requests and full schedule definitions."""

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    schedule_type: ScheduleType = Field(description="DATE_RANGE, RECURRING or SPECIFIC_DATES")

    date_range_from: Optional[datetime] = Field(default=None)
    date_range_to: Optional[datetime] = Field(default=None)
    cron_expression: Optional[str] = Field(
        default=None,
        description="Cron expression (5 fields) or '@every <n><s|m|h|d>'",
    )
    timezone: str = Field(default="UTC", max_length=64)
    specific_dates: Optional[List[datetime]] = Field(default=None)

    is_enabled: bool = Field(default=True)
    is_default: bool = Field(default=False)
    batch_size: int = Field(default=5)
    email_type_priorities: Optional[Dict[str, str]] = Field(default=None)
    sender_priorities: Optional[Dict[str, str]] = Field(default=None)

    @field_validator("date_range_from", "date_range_to", mode="after")
    @classmethod
    def _normalise_datetime(cls, value):
        return _naive(value)

    @field_validator("specific_dates", mode="after")
    @classmethod
    def _normalise_dates(cls, value):
        if value is None:
            return None
        return [_naive(v) for v in value]


class ScheduleCreate(ScheduleBase):
    """Request body to create a schedule."""

    user_id: str = Field(..., min_length=1, description="Owner of the schedule")
    email_account_id: str = Field(..., min_length=1, description="Mail account to process")


class ScheduleUpdate(BaseModel):
    """Request body to update a schedule. Only fields that are set are applied."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    schedule_type: Optional[ScheduleType] = None
    date_range_from: Optional[datetime] = None
    date_range_to: Optional[datetime] = None
    cron_expression: Optional[str] = None
    timezone: Optional[str] = Field(default=None, max_length=64)
    specific_dates: Optional[List[datetime]] = None
    is_enabled: Optional[bool] = None
    batch_size: Optional[int] = None
    email_type_priorities: Optional[Dict[str, str]] = None
    sender_priorities: Optional[Dict[str, str]] = None

    @field_validator("date_range_from", "date_range_to", mode="after")
    @classmethod
    def _normalise_datetime(cls, value):
        return _naive(value)

    @field_validator("specific_dates", mode="after")
    @classmethod
    def _normalise_dates(cls, value):
        if value is None:
            return None
        return [_naive(v) for v in value]


TIMING_FIELDS = frozenset(
    {
        "schedule_type",
        "date_range_from",
        "date_range_to",
        "cron_expression",
        "timezone",
        "specific_dates",
    }
)

# Columns that cannot be cleared; an explicit null in an update leaves them unchanged
REQUIRED_FIELDS = frozenset({"name", "schedule_type", "timezone", "is_enabled", "batch_size"})


class ScheduleConflict(BaseModel):
    """One timing collision with existing schedules."""

    conflict_type: ScheduleType
    conflict_time: Optional[datetime] = Field(
        default=None, description="Colliding instant (next cron run, shared date, or range start)"
    )
    conflicting_schedule_ids: List[str] = Field(default_factory=list)
    conflicting_schedules: List[str] = Field(default_factory=list, description="Schedule names")
    suggested_alternatives: List[datetime] = Field(default_factory=list)


class ValidationResult(BaseModel):
    """Outcome of validating a candidate schedule configuration."""

    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    conflicts: List[ScheduleConflict] = Field(default_factory=list)


class ScheduleResponse(BaseModel):
    """Public representation of a schedule."""

    id: str
    user_id: str
    email_account_id: str
    name: str
    description: Optional[str] = None
    schedule_type: ScheduleType
    date_range_from: Optional[datetime] = None
    date_range_to: Optional[datetime] = None
    cron_expression: Optional[str] = None
    timezone: str
    specific_dates: Optional[List[datetime]] = None
    is_enabled: bool
    is_default: bool
    batch_size: int
    email_type_priorities: Optional[Dict[str, str]] = None
    sender_priorities: Optional[Dict[str, str]] = None
    next_execution_at: Optional[datetime] = None
    last_executed_at: Optional[datetime] = None
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CalendarEntry(BaseModel):
    """Upcoming occurrences of one enabled recurring schedule."""

    schedule_id: str
    schedule_name: str
    user_id: str
    email_account_id: str
    cron_expression: Optional[str] = None
    timezone: str
    next_executions: List[datetime] = Field(default_factory=list)
    error: Optional[str] = None


class BulkToggleResult(BaseModel):
    """Result of a bulk enable/disable request."""

    enabled: bool
    updated: List[str] = Field(default_factory=list)
    not_found: List[str] = Field(default_factory=list)


class RecentExecution(BaseModel):
    """Compact execution summary used by analytics."""

    id: str
    schedule_name: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    processed_emails: int = 0
    failed_emails: int = 0


class ProcessingAnalytics(BaseModel):
    """Aggregate statistics across a user's schedules."""

    user_id: str
    total_schedules: int = 0
    active_schedules: int = 0
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_processing_time_ms: float = 0.0
    emails_processed_today: int = 0
    emails_processed_this_week: int = 0
    emails_processed_this_month: int = 0
    recent_executions: List[RecentExecution] = Field(default_factory=list)
