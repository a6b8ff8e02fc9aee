"""Processing schedule model for the email schedule engine."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import ScheduleType
from core.utils import parse_datetimes
from db.base import BaseModel


class Schedule(BaseModel):
    """Schedule model describing when to fetch and classify one account's email.

    Attributes:
        id: Unique identifier (UUID string)
        user_id: Owner of the schedule
        email_account_id: Mail account the job runs against
        name: Schedule name
        description: Free-form description
        schedule_type: DATE_RANGE, RECURRING or SPECIFIC_DATES
        date_range_from / date_range_to: Window for one-shot DATE_RANGE runs
        cron_expression / timezone: Recurrence for RECURRING schedules
        specific_dates: ISO timestamps for SPECIFIC_DATES schedules
        is_enabled: Whether the poller may pick the schedule up
        is_default: Whether this is the account's initial schedule
        batch_size: Emails handled per processing batch
        email_type_priorities: Category -> priority overrides
        sender_priorities: Sender address -> priority overrides
        next_execution_at: Next due instant (naive UTC), None when dormant
        last_executed_at: Completion time of the last successful run
        total_executions / successful_executions / failed_executions: Counters
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    __tablename__ = "processing_schedules"
    __table_args__ = (
        Index("ix_processing_schedules_due", "is_enabled", "next_execution_at"),
    )

    user_id: Mapped[str] = mapped_column(nullable=False, index=True)
    email_account_id: Mapped[str] = mapped_column(nullable=False, index=True)
    name: Mapped[str] = mapped_column(nullable=False)
    description: Mapped[Optional[str]] = mapped_column(nullable=True)
    schedule_type: Mapped[str] = mapped_column(nullable=False, index=True)

    date_range_from: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    date_range_to: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cron_expression: Mapped[Optional[str]] = mapped_column(nullable=True)
    timezone: Mapped[str] = mapped_column(nullable=False, default="UTC")
    specific_dates: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    is_enabled: Mapped[bool] = mapped_column(default=True, index=True)
    is_default: Mapped[bool] = mapped_column(default=False)

    batch_size: Mapped[int] = mapped_column(default=5)
    email_type_priorities: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    sender_priorities: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    next_execution_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True, index=True
    )
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    total_executions: Mapped[int] = mapped_column(default=0)
    successful_executions: Mapped[int] = mapped_column(default=0)
    failed_executions: Mapped[int] = mapped_column(default=0)

    # Executions are always queried explicitly; never lazy-load in async code.
    executions: Mapped[list["Execution"]] = relationship(
        "Execution",
        back_populates="schedule",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="raise",
    )

    @property
    def type(self) -> ScheduleType:
        return ScheduleType(self.schedule_type)

    @property
    def parsed_specific_dates(self) -> list[datetime]:
        """Configured specific dates as naive-UTC datetimes."""
        return parse_datetimes(self.specific_dates or [])

    def timing_config(self) -> dict[str, Any]:
        """Return the fields the next-run calculator and validator look at."""
        return {
            "date_range_from": self.date_range_from,
            "date_range_to": self.date_range_to,
            "cron_expression": self.cron_expression,
            "timezone": self.timezone,
            "specific_dates": self.parsed_specific_dates,
        }

    def processing_config(self) -> dict[str, Any]:
        """Return the configuration handed to the email processing pipeline."""
        return {
            "schedule_id": self.id,
            "user_id": self.user_id,
            "email_account_id": self.email_account_id,
            "schedule_type": self.schedule_type,
            "batch_size": self.batch_size,
            "email_type_priorities": dict(self.email_type_priorities or {}),
            "sender_priorities": dict(self.sender_priorities or {}),
        }

    def __repr__(self) -> str:
        return (
            f"<Schedule {self.id} '{self.name}' type={self.schedule_type} "
            f"next={self.next_execution_at}>"
        )
