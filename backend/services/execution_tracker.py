"""Execution lifecycle bookkeeping.

Owns creation, progress updates and the single terminal transition of
``Execution`` rows. Every write is a single-row operation in its own
session: an execution has exactly one owning runner at a time, so no
cross-record transaction is needed.

Terminal writes only apply to RUNNING rows; repeating one (or racing a
cancellation) is a logged no-op rather than an overwrite.
"""

import logging
import traceback
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.schemas.execution import ExecutionSummary, ProgressUpdate
from app.config import get_settings
from core.constants import ExecutionStatus
from core.exceptions import NotFoundError
from core.utils import isoformat_utc, utcnow_naive
from db.models.execution import Execution

logger = logging.getLogger(__name__)


def error_details(error: BaseException) -> dict:
    """Structured description of ``error`` for ``Execution.error_details``."""
    return {
        "type": type(error).__name__,
        "stack": "".join(traceback.format_exception(error)),
        "timestamp": isoformat_utc(utcnow_naive()),
    }


class ExecutionTracker:
    """Creates and mutates Execution records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self.settings = get_settings()

    # ─── Writes ────────────────────────────────────────────

    async def create_execution(
        self,
        schedule_id: str,
        attempt: int = 1,
        max_attempts: Optional[int] = None,
        manual: bool = False,
    ) -> Execution:
        """Create a RUNNING execution starting now."""
        execution = Execution(
            schedule_id=schedule_id,
            status=ExecutionStatus.RUNNING.value,
            started_at=utcnow_naive(),
            attempt_count=attempt,
            is_manual=manual,
            max_attempts=max_attempts or self.settings.EXECUTION_MAX_ATTEMPTS,
        )
        async with self._session_factory() as session:
            session.add(execution)
            await session.commit()
        logger.debug(
            f"[execution-tracker] Created execution {execution.id} "
            f"for schedule {schedule_id} (attempt {attempt})"
        )
        return execution

    async def update_progress(
        self,
        execution_id: str,
        counters: Union[ProgressUpdate, dict],
    ) -> None:
        """Overwrite the progress counters that are set in ``counters``."""
        if isinstance(counters, dict):
            counters = ProgressUpdate(**counters)
        values = counters.model_dump(exclude_none=True)

        async with self._session_factory() as session:
            execution = await self._get_for_update(session, execution_id)
            if execution.is_terminal:
                logger.warning(
                    f"[execution-tracker] Ignoring progress for finished execution "
                    f"{execution_id} ({execution.status})"
                )
                return
            for key, value in values.items():
                setattr(execution, key, value)
            await session.commit()

    async def complete_execution(
        self,
        execution_id: str,
        summary: Union[ExecutionSummary, dict],
    ) -> bool:
        """Mark the execution COMPLETED with its summary metrics.

        Returns:
            False if the execution had already reached a terminal state
        """
        if isinstance(summary, dict):
            summary = ExecutionSummary(**summary)

        async with self._session_factory() as session:
            execution = await self._get_for_update(session, execution_id)
            if execution.is_terminal:
                logger.warning(
                    f"[execution-tracker] Execution {execution_id} already "
                    f"{execution.status}; not completing"
                )
                return False

            completed_at = utcnow_naive()
            execution.status = ExecutionStatus.COMPLETED.value
            execution.completed_at = completed_at
            execution.processed_emails_count = summary.processed
            execution.failed_emails_count = summary.failed
            execution.processing_duration_ms = (
                summary.processing_duration_ms
                if summary.processing_duration_ms is not None
                else _elapsed_ms(execution.started_at, completed_at)
            )
            await session.commit()
        return True

    async def fail_execution(self, execution_id: str, error: BaseException) -> bool:
        """Mark the execution FAILED with the error message and details.

        Returns:
            False if the execution had already reached a terminal state
        """
        async with self._session_factory() as session:
            execution = await self._get_for_update(session, execution_id)
            if execution.is_terminal:
                logger.warning(
                    f"[execution-tracker] Execution {execution_id} already "
                    f"{execution.status}; not failing"
                )
                return False

            completed_at = utcnow_naive()
            execution.status = ExecutionStatus.FAILED.value
            execution.completed_at = completed_at
            execution.error_message = str(error) or type(error).__name__
            execution.error_details = error_details(error)
            execution.processing_duration_ms = _elapsed_ms(execution.started_at, completed_at)
            await session.commit()
        return True

    # ─── Reads ─────────────────────────────────────────────

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        async with self._session_factory() as session:
            return await session.get(Execution, execution_id)

    async def get_latest_execution(self, schedule_id: str) -> Optional[Execution]:
        """Most recently started execution of a schedule."""
        stmt = (
            select(Execution)
            .where(Execution.schedule_id == schedule_id)
            .order_by(Execution.started_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def get_last_successful_execution(self, schedule_id: str) -> Optional[Execution]:
        """Most recently completed successful execution of a schedule."""
        stmt = (
            select(Execution)
            .where(Execution.schedule_id == schedule_id)
            .where(Execution.status == ExecutionStatus.COMPLETED.value)
            .order_by(Execution.completed_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def count_failed_attempts_since(self, schedule_id: str, since: datetime) -> int:
        """Count FAILED poller executions of a schedule started at or after ``since``.

        Manual runs are left out; they never count towards retry exhaustion.
        """
        stmt = (
            select(func.count())
            .select_from(Execution)
            .where(Execution.schedule_id == schedule_id)
            .where(Execution.status == ExecutionStatus.FAILED.value)
            .where(Execution.started_at >= since)
            .where(Execution.is_manual == False)  # noqa: E712
        )
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar() or 0

    async def _get_for_update(self, session: AsyncSession, execution_id: str) -> Execution:
        execution = await session.get(Execution, execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution


def _elapsed_ms(started_at: Optional[datetime], finished_at: datetime) -> Optional[int]:
    if started_at is None:
        return None
    return max(0, int((finished_at - started_at).total_seconds() * 1000))
