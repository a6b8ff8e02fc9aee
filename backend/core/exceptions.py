"""Custom exceptions for the email schedule engine."""

from typing import Optional


class ScheduleEngineError(Exception):
    """Base exception for the schedule engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP-equivalent status code for the API layer
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(ScheduleEngineError):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class ScheduleValidationError(ScheduleEngineError):
    """Malformed or incomplete schedule configuration. Nothing was persisted."""

    def __init__(
        self,
        message: str = "Schedule validation failed",
        errors: Optional[list[str]] = None,
        warnings: Optional[list[str]] = None,
    ):
        """Initialize with the structured validation messages and 422 status."""
        self.errors = errors or []
        self.warnings = warnings or []
        super().__init__(message, 422)


class ScheduleConflictError(ScheduleValidationError):
    """Schedule timing overlaps an existing enabled schedule."""

    def __init__(
        self,
        message: str = "Schedule conflicts with an existing schedule",
        errors: Optional[list[str]] = None,
        warnings: Optional[list[str]] = None,
        conflicts: Optional[list] = None,
    ):
        """Initialize with the conflict entries and 409 status."""
        super().__init__(message, errors=errors, warnings=warnings)
        self.conflicts = conflicts or []
        self.status_code = 409


class RecurrenceParseError(ScheduleEngineError):
    """A recurrence expression or timezone could not be parsed."""

    def __init__(self, expression: str, reason: str = ""):
        """Initialize with the offending expression."""
        self.expression = expression
        detail = f": {reason}" if reason else ""
        super().__init__(f"Invalid recurrence expression '{expression}'{detail}", 422)


class StoreError(ScheduleEngineError):
    """A persistence operation failed (e.g. lock release)."""

    def __init__(self, message: str = "Store operation failed"):
        """Initialize StoreError with 500 status code."""
        super().__init__(message, 500)
