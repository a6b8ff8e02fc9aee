"""Schedule execution model for the email schedule engine."""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import JSON, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import ExecutionStatus
from core.utils import utcnow_naive
from db.base import Base


class Execution(Base):
    """Execution model representing one concrete run of a schedule.

    Attributes:
        id: Unique identifier (UUID string)
        schedule_id: Foreign key to Schedule
        status: RUNNING, COMPLETED, FAILED or CANCELLED
        started_at: Execution start timestamp
        completed_at: Terminal transition timestamp
        total_batches_count / completed_batches_count: Batch progress
        total_emails_count / processed_emails_count / failed_emails_count: Email progress
        attempt_count: Which attempt against the current due instant this is
        is_manual: Started by ``execute_now`` rather than the poller
        max_attempts: Attempts allowed before the schedule is advanced anyway
        error_message: Error message if execution failed
        error_details: Structured error info (type, traceback, timestamp)
        processing_duration_ms: Wall time from start to completion
        created_at: Creation timestamp
    """

    __tablename__ = "schedule_executions"
    __table_args__ = (
        Index("ix_schedule_executions_schedule_status", "schedule_id", "status"),
    )

    id: Mapped[str] = mapped_column(primary_key=True, default=lambda: str(uuid4()))
    schedule_id: Mapped[str] = mapped_column(
        ForeignKey("processing_schedules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(
        default=ExecutionStatus.RUNNING.value, index=True
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow_naive, index=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    total_batches_count: Mapped[int] = mapped_column(default=0)
    completed_batches_count: Mapped[int] = mapped_column(default=0)
    total_emails_count: Mapped[int] = mapped_column(default=0)
    processed_emails_count: Mapped[int] = mapped_column(default=0)
    failed_emails_count: Mapped[int] = mapped_column(default=0)

    attempt_count: Mapped[int] = mapped_column(default=1)
    is_manual: Mapped[bool] = mapped_column(default=False)
    max_attempts: Mapped[int] = mapped_column(default=3)
    error_message: Mapped[Optional[str]] = mapped_column(nullable=True)
    error_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    processing_duration_ms: Mapped[Optional[int]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow_naive)

    schedule: Mapped["Schedule"] = relationship(
        "Schedule", back_populates="executions", lazy="raise"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != ExecutionStatus.RUNNING.value

    @property
    def completion_percentage(self) -> int:
        if self.total_emails_count <= 0:
            return 0
        return round(self.processed_emails_count / self.total_emails_count * 100)
