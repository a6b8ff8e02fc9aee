"""Execution lock model.

One row per due instant currently being processed. The UNIQUE constraint
on ``execution_time`` is what makes concurrent scheduler processes skip a
group that another process already claimed.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from core.utils import utcnow_naive
from db.base import Base


class ExecutionLock(Base):
    """Exclusive claim on a single execution timestamp.

    Attributes:
        id: Unique identifier (UUID string)
        execution_time: The due instant being processed (unique)
        schedule_ids: Schedules in the claimed group
        is_locked: Always True while the row exists
        locked_by: Scheduler instance that inserted the row
        created_at: When the claim was made
    """

    __tablename__ = "execution_locks"
    __table_args__ = (
        UniqueConstraint("execution_time", name="uq_execution_locks_execution_time"),
    )

    id: Mapped[str] = mapped_column(primary_key=True, default=lambda: str(uuid4()))
    execution_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    schedule_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_locked: Mapped[bool] = mapped_column(default=True)
    locked_by: Mapped[str] = mapped_column(nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow_naive)
