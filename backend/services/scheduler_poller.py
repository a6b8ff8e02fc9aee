"""Scheduler poller.

Every tick:

1. Load enabled schedules whose ``next_execution_at`` is at or before now.
2. Group them by their exact ``next_execution_at``.
3. For each group (oldest first), claim the instant through the lock
   manager. A denied claim means another process owns the group, so it is
   skipped for this tick. A store error while claiming skips only that
   group.
4. Re-read the group under the claim and drop schedules that are no
   longer due at that instant (another process ran them between our
   query and our claim).
5. Run every schedule of a claimed group concurrently and wait for all of
   them to settle. One schedule failing never cancels or hides its
   siblings.
6. Release the claim, whatever happened inside the group.

Schedules handed to the runner are detached snapshots; the runner does its
own writes in its own sessions.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from itertools import groupby
from typing import Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from core.constants import PollerState
from core.exceptions import StoreError
from core.utils import to_naive_utc, utcnow_naive
from db.models.schedule import Schedule
from services.execution_runner import ExecutionRunner
from services.lock_manager import ExecutionLockManager

logger = logging.getLogger(__name__)


@dataclass
class ScheduleRunOutcome:
    """Settled result of one schedule inside a group."""

    schedule_id: str
    schedule_name: str
    success: bool
    execution_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class TickSummary:
    """What a single tick did."""

    started_at: datetime
    due: int = 0
    groups: int = 0
    skipped_groups: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_tick: bool = False
    outcomes: List[ScheduleRunOutcome] = field(default_factory=list)

    def as_dict(self) -> Dict[str, object]:
        return {
            "started_at": self.started_at.isoformat(),
            "due": self.due,
            "groups": self.groups,
            "skipped_groups": self.skipped_groups,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped_tick": self.skipped_tick,
        }


class SchedulerPoller:
    """Finds due schedules and runs them, one locked group at a time."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        runner: ExecutionRunner,
        lock_manager: Optional[ExecutionLockManager] = None,
        clock: Callable[[], datetime] = utcnow_naive,
        interval_seconds: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.runner = runner
        self.lock_manager = lock_manager or ExecutionLockManager(session_factory)
        self.clock = clock
        self.interval_seconds = (
            interval_seconds or get_settings().SCHEDULER_POLL_INTERVAL_SECONDS
        )
        self.state = PollerState.IDLE
        self._stopping: Optional[asyncio.Event] = None

    @property
    def is_processing(self) -> bool:
        return self.state == PollerState.PROCESSING

    async def tick(self, now: Optional[datetime] = None) -> TickSummary:
        """Run one polling pass.

        A tick requested while a previous tick of this poller is still
        processing returns immediately with ``skipped_tick`` set.
        """
        now = to_naive_utc(now) if now else self.clock()
        summary = TickSummary(started_at=now)

        if self.is_processing:
            logger.warning(
                "[scheduler-poller] Previous tick still processing; skipping this one"
            )
            summary.skipped_tick = True
            return summary

        self.state = PollerState.PROCESSING
        try:
            due = await self.find_due_schedules(now)
            summary.due = len(due)
            if not due:
                logger.debug("[scheduler-poller] No due schedules found.")
                return summary

            groups = self.group_by_execution_time(due)
            summary.groups = len(groups)
            logger.info(
                f"[scheduler-poller] Found {len(due)} due schedule(s) in "
                f"{len(groups)} group(s)"
            )

            for execution_time, schedules in groups.items():
                outcomes = await self._process_group(execution_time, schedules)
                if outcomes is None:
                    summary.skipped_groups += 1
                    continue
                summary.outcomes.extend(outcomes)
                summary.succeeded += sum(1 for o in outcomes if o.success)
                summary.failed += sum(1 for o in outcomes if not o.success)
        finally:
            self.state = PollerState.IDLE

        logger.info(
            f"[scheduler-poller] Tick done: {summary.succeeded} succeeded, "
            f"{summary.failed} failed, {summary.skipped_groups} group(s) skipped"
        )
        return summary

    async def find_due_schedules(self, now: datetime) -> List[Schedule]:
        """Enabled schedules with ``next_execution_at <= now``, oldest first."""
        stmt = (
            select(Schedule)
            .where(Schedule.is_enabled == True)  # noqa: E712
            .where(Schedule.next_execution_at != None)  # noqa: E711
            .where(Schedule.next_execution_at <= now)
            .order_by(Schedule.next_execution_at.asc(), Schedule.created_at.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            schedules = list(result.scalars().all())
            session.expunge_all()
        return schedules

    @staticmethod
    def group_by_execution_time(schedules: List[Schedule]) -> Dict[datetime, List[Schedule]]:
        """Group schedules by exact ``next_execution_at``, ascending."""
        ordered = sorted(schedules, key=lambda s: s.next_execution_at)
        return {
            execution_time: list(members)
            for execution_time, members in groupby(ordered, key=lambda s: s.next_execution_at)
        }

    async def _process_group(
        self, execution_time: datetime, schedules: List[Schedule]
    ) -> Optional[List[ScheduleRunOutcome]]:
        schedule_ids = [s.id for s in schedules]
        try:
            acquired = await self.lock_manager.acquire(execution_time, schedule_ids)
        except SQLAlchemyError as exc:
            error = StoreError(f"Could not lock {execution_time.isoformat()}: {exc}")
            logger.error(f"[scheduler-poller] {error.message}; skipping group", exc_info=True)
            return None
        if not acquired:
            logger.info(
                f"[scheduler-poller] Group at {execution_time.isoformat()} is locked "
                f"by another instance; skipping {len(schedules)} schedule(s)"
            )
            return None

        try:
            # The snapshot may predate another instance finishing this group
            schedules = await self._still_due(execution_time, schedule_ids)
            if not schedules:
                logger.info(
                    f"[scheduler-poller] Group at {execution_time.isoformat()} was "
                    f"already run by another instance; skipping"
                )
                return None

            logger.info(
                f"[scheduler-poller] Running {len(schedules)} schedule(s) due at "
                f"{execution_time.isoformat()}: "
                + ", ".join(f"'{s.name}'" for s in schedules)
            )
            results = await asyncio.gather(
                *(self.runner.execute(s, execution_time) for s in schedules),
                return_exceptions=True,
            )
            return [self._outcome(s, r) for s, r in zip(schedules, results)]
        finally:
            await self.lock_manager.release(execution_time)

    async def _still_due(
        self, execution_time: datetime, schedule_ids: List[str]
    ) -> List[Schedule]:
        """Re-read the group under its lock, keeping schedules still due at ``execution_time``."""
        stmt = (
            select(Schedule)
            .where(Schedule.id.in_(schedule_ids))
            .where(Schedule.is_enabled == True)  # noqa: E712
            .where(Schedule.next_execution_at == execution_time)
            .order_by(Schedule.created_at.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            schedules = list(result.scalars().all())
            session.expunge_all()
        return schedules

    @staticmethod
    def _outcome(schedule: Schedule, result) -> ScheduleRunOutcome:
        if isinstance(result, BaseException):
            logger.error(
                f"[scheduler-poller] Schedule '{schedule.name}' ({schedule.id}) "
                f"failed: {result}"
            )
            return ScheduleRunOutcome(
                schedule_id=schedule.id,
                schedule_name=schedule.name,
                success=False,
                error=str(result) or type(result).__name__,
            )
        return ScheduleRunOutcome(
            schedule_id=schedule.id,
            schedule_name=schedule.name,
            success=True,
            execution_id=getattr(result, "id", None),
        )

    # ─── Long-running mode ─────────────────────────────────

    async def run_forever(self) -> None:
        """Tick every ``interval_seconds`` until ``stop()`` is called.

        Errors escaping a tick are logged; the loop keeps going.
        """
        self._stopping = asyncio.Event()
        logger.info(
            f"[scheduler-poller] Started, polling every {self.interval_seconds}s"
        )
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception as exc:
                logger.error(f"[scheduler-poller] Tick failed: {exc}", exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("[scheduler-poller] Stopped")

    def stop(self) -> None:
        if self._stopping is not None:
            self._stopping.set()
