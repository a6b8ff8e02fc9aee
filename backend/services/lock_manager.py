"""Execution lock manager.

Multiple scheduler processes may see the same due group in the same
minute. Each one tries to INSERT a row keyed by the group's exact
execution timestamp; the UNIQUE constraint lets exactly one insert win.
The winner processes the group and deletes the row afterwards; losers
skip the group for this tick without retrying.

There is no lease renewal. A holder that crashes between acquire and
release leaves the row behind, and that timestamp stays locked until an
operator removes it or ``EXECUTION_LOCK_STALE_AFTER_SECONDS`` is set, in
which case rows older than the threshold are taken over on the next
acquire attempt for the same timestamp.
"""

import logging
import os
import socket
from datetime import datetime, timedelta
from typing import Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from core.exceptions import StoreError
from core.utils import to_naive_utc, utcnow_naive
from db.models.execution_lock import ExecutionLock

logger = logging.getLogger(__name__)


def default_instance_id() -> str:
    """Identify this scheduler process in lock rows."""
    configured = get_settings().SCHEDULER_INSTANCE_ID
    if configured:
        return configured
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


class ExecutionLockManager:
    """Acquire/release exclusive claims on execution timestamps.

    Example:
        >>> locks = ExecutionLockManager(AsyncSessionLocal)
        >>> if await locks.acquire(due_at, [s.id for s in group]):
        ...     try:
        ...         ...  # run the group
        ...     finally:
        ...         await locks.release(due_at)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        instance_id: Optional[str] = None,
        stale_after_seconds: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.instance_id = instance_id or default_instance_id()
        if stale_after_seconds is None:
            stale_after_seconds = get_settings().EXECUTION_LOCK_STALE_AFTER_SECONDS
        self.stale_after_seconds = stale_after_seconds

    async def acquire(self, execution_time: datetime, schedule_ids: Iterable[str]) -> bool:
        """Claim ``execution_time``.

        Returns:
            True if this caller now owns the instant, False if another
            process already holds it. Store errors other than the unique
            collision propagate.
        """
        execution_time = to_naive_utc(execution_time)
        async with self._session_factory() as session:
            if self.stale_after_seconds is not None:
                await self._take_over_stale(session, execution_time)

            session.add(
                ExecutionLock(
                    execution_time=execution_time,
                    schedule_ids=list(schedule_ids),
                    is_locked=True,
                    locked_by=self.instance_id,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning(
                    f"[lock-manager] Execution time {execution_time.isoformat()} "
                    f"already locked"
                )
                return False

        logger.debug(
            f"[lock-manager] Acquired execution lock for {execution_time.isoformat()} "
            f"({self.instance_id})"
        )
        return True

    async def release(self, execution_time: datetime) -> bool:
        """Delete the lock row for ``execution_time``.

        Failures are logged and swallowed so they never mask the outcome of
        the group that was just processed.

        Returns:
            True if a row was deleted
        """
        execution_time = to_naive_utc(execution_time)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(ExecutionLock).where(
                        ExecutionLock.execution_time == execution_time
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            error = StoreError(
                f"Failed to release execution lock for {execution_time.isoformat()}: {exc}"
            )
            logger.error(f"[lock-manager] {error.message}", exc_info=True)
            return False

        if result.rowcount:
            logger.debug(
                f"[lock-manager] Released execution lock for {execution_time.isoformat()}"
            )
            return True
        logger.warning(
            f"[lock-manager] No execution lock to release for {execution_time.isoformat()}"
        )
        return False

    async def is_locked(self, execution_time: datetime) -> bool:
        """Check whether any process holds ``execution_time``."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ExecutionLock.id).where(
                    ExecutionLock.execution_time == to_naive_utc(execution_time)
                )
            )
            return result.first() is not None

    async def list_locks(self, older_than: Optional[timedelta] = None) -> List[ExecutionLock]:
        """List held locks, optionally only those older than ``older_than``."""
        stmt = select(ExecutionLock).order_by(ExecutionLock.execution_time.asc())
        if older_than is not None:
            stmt = stmt.where(ExecutionLock.created_at < utcnow_naive() - older_than)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def _take_over_stale(self, session: AsyncSession, execution_time: datetime) -> None:
        cutoff = utcnow_naive() - timedelta(seconds=self.stale_after_seconds)
        result = await session.execute(
            delete(ExecutionLock)
            .where(ExecutionLock.execution_time == execution_time)
            .where(ExecutionLock.created_at < cutoff)
        )
        if result.rowcount:
            logger.warning(
                f"[lock-manager] Took over stale execution lock for "
                f"{execution_time.isoformat()} (older than {self.stale_after_seconds}s)"
            )
