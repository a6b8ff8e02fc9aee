"""Runs one schedule's fetch-and-process job.

Steps for a single schedule:

1. Create a RUNNING execution.
2. Compute the email date window from the schedule type:
   - DATE_RANGE: the configured from/to
   - RECURRING: since the last successful run completed (or the schedule
     was created), until now
   - SPECIFIC_DATES: a window of ``SPECIFIC_DATE_WINDOW_HOURS`` starting at
     the due date
3. Fetch up to ``min(batch_size, MAX_EMAILS_PER_EXECUTION)`` emails and
   hand them to the processing pipeline.
4. On success: complete the execution, bump counters, and advance the
   schedule (DATE_RANGE schedules are disabled instead).
5. On error: fail the execution with details, bump the failure counters
   and re-raise. The schedule stays due so the next tick retries it, until
   ``max_attempts`` failures pile up against the same due instant; then it
   is advanced anyway.
"""

import logging
import math
import time
from datetime import datetime, timedelta
from typing import Callable, NamedTuple, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.schemas.execution import ExecutionSummary
from app.config import get_settings
from core.constants import ScheduleType
from core.utils import to_naive_utc, utcnow_naive
from db.models.execution import Execution
from db.models.schedule import Schedule
from integrations.mail import EmailFetcher, EmailProcessor, ProcessingResult
from services.execution_tracker import ExecutionTracker
from services.next_run import calculate_next_execution

logger = logging.getLogger(__name__)


class DateWindow(NamedTuple):
    since: datetime
    before: datetime


class ExecutionRunner:
    """Executes schedules against injected mail collaborators."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fetcher: EmailFetcher,
        processor: EmailProcessor,
        tracker: Optional[ExecutionTracker] = None,
        clock: Callable[[], datetime] = utcnow_naive,
    ):
        self._session_factory = session_factory
        self.fetcher = fetcher
        self.processor = processor
        self.tracker = tracker or ExecutionTracker(session_factory)
        self.clock = clock
        self.settings = get_settings()

    async def execute(self, schedule: Schedule, due_at: Optional[datetime] = None) -> Execution:
        """Run ``schedule`` once and return its finished execution.

        Args:
            schedule: The schedule to run (a detached snapshot is fine)
            due_at: The due instant the run is for (the group's
                ``next_execution_at``). None for manual runs, which never
                count towards retry exhaustion.

        Raises:
            Exception: Whatever the fetch/processing collaborators raised,
                after the execution has been marked FAILED
        """
        attempt = await self._attempt_number(schedule, due_at)
        execution = await self.tracker.create_execution(
            schedule.id, attempt=attempt, manual=due_at is None
        )
        started = time.monotonic()

        logger.info(
            f"[execution-runner] Starting execution {execution.id} for schedule "
            f"'{schedule.name}' ({schedule.schedule_type}, attempt {attempt})"
        )

        try:
            now = self.clock()
            window = await self.compute_window(schedule, now, due_at)
            limit = self.email_limit(schedule)
            logger.info(
                f"[execution-runner] Window {window.since.isoformat()} -> "
                f"{window.before.isoformat()}, limit {limit}"
            )

            emails = await self.fetcher.fetch_emails_in_range(
                schedule.email_account_id, window.since, window.before, limit
            )
            batch_size = max(1, schedule.batch_size or self.settings.DEFAULT_BATCH_SIZE)
            total_batches = math.ceil(len(emails) / batch_size)
            await self.tracker.update_progress(
                execution.id,
                {"total_emails_count": len(emails), "total_batches_count": total_batches},
            )

            result = await self.processor.process_emails(
                schedule.processing_config(), emails, execution.id
            )
            if isinstance(result, dict):
                result = ProcessingResult(**result)

            await self.tracker.update_progress(
                execution.id, {"completed_batches_count": total_batches}
            )
            await self.tracker.complete_execution(
                execution.id,
                ExecutionSummary(
                    processed=result.processed,
                    failed=result.failed,
                    processing_duration_ms=int((time.monotonic() - started) * 1000),
                ),
            )
            await self._record_success(schedule.id)
        except Exception as exc:
            logger.error(
                f"[execution-runner] Execution {execution.id} for schedule "
                f"'{schedule.name}' failed: {exc}",
                exc_info=True,
            )
            try:
                await self._record_failure(schedule, execution, exc, due_at)
            except Exception:
                logger.error(
                    f"[execution-runner] Could not record failure of execution "
                    f"{execution.id}",
                    exc_info=True,
                )
            raise

        logger.info(
            f"[execution-runner] Completed execution {execution.id} for schedule "
            f"'{schedule.name}': {result.processed} processed, {result.failed} failed"
        )
        return await self.tracker.get_execution(execution.id)

    # ─── Window / limits ───────────────────────────────────

    async def compute_window(
        self,
        schedule: Schedule,
        now: datetime,
        due_at: Optional[datetime] = None,
    ) -> DateWindow:
        """Date window of emails a run of ``schedule`` at ``now`` covers."""
        now = to_naive_utc(now)
        schedule_type = ScheduleType(schedule.schedule_type)

        if schedule_type == ScheduleType.DATE_RANGE:
            return DateWindow(schedule.date_range_from, schedule.date_range_to)

        if schedule_type == ScheduleType.SPECIFIC_DATES:
            start = to_naive_utc(due_at) if due_at else now
            return DateWindow(
                start, start + timedelta(hours=self.settings.SPECIFIC_DATE_WINDOW_HOURS)
            )

        last_success = await self.tracker.get_last_successful_execution(schedule.id)
        if last_success and last_success.completed_at:
            since = last_success.completed_at
        else:
            since = schedule.created_at or now
        return DateWindow(since, now)

    def email_limit(self, schedule: Schedule) -> int:
        batch_size = schedule.batch_size or self.settings.DEFAULT_BATCH_SIZE
        return max(1, min(batch_size, self.settings.MAX_EMAILS_PER_EXECUTION))

    # ─── Schedule bookkeeping ──────────────────────────────

    async def _attempt_number(self, schedule: Schedule, due_at: Optional[datetime]) -> int:
        if due_at is None:
            return 1
        failed = await self.tracker.count_failed_attempts_since(schedule.id, due_at)
        return failed + 1

    async def _record_success(self, schedule_id: str) -> None:
        now = self.clock()
        async with self._session_factory() as session:
            schedule = await session.get(Schedule, schedule_id)
            if schedule is None:
                logger.warning(
                    f"[execution-runner] Schedule {schedule_id} vanished before it "
                    f"could be advanced"
                )
                return
            values = self._advance_values(schedule, now)
            values.update(
                last_executed_at=now,
                total_executions=Schedule.total_executions + 1,
                successful_executions=Schedule.successful_executions + 1,
            )
            await session.execute(
                update(Schedule)
                .where(Schedule.id == schedule_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if "next_execution_at" in values:
            logger.info(
                f"[execution-runner] Schedule {schedule_id} next run: "
                f"{values['next_execution_at']}"
            )

    async def _record_failure(
        self,
        schedule: Schedule,
        execution: Execution,
        error: BaseException,
        due_at: Optional[datetime],
    ) -> None:
        if not await self.tracker.fail_execution(execution.id, error):
            return

        now = self.clock()
        exhausted = False
        if due_at is not None and to_naive_utc(due_at) <= now:
            failures = await self.tracker.count_failed_attempts_since(schedule.id, due_at)
            exhausted = failures >= execution.max_attempts

        async with self._session_factory() as session:
            current = await session.get(Schedule, schedule.id)
            if current is None:
                return
            values = {
                "total_executions": Schedule.total_executions + 1,
                "failed_executions": Schedule.failed_executions + 1,
            }
            if exhausted:
                values.update(self._advance_values(current, now))
                logger.warning(
                    f"[execution-runner] Schedule '{current.name}' failed "
                    f"{execution.max_attempts} times for {due_at}; advancing"
                )
            await session.execute(
                update(Schedule)
                .where(Schedule.id == schedule.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    @staticmethod
    def _advance_values(schedule: Schedule, now: datetime) -> dict:
        if schedule.schedule_type == ScheduleType.DATE_RANGE.value:
            # One-shot: never due again
            return {"is_enabled": False, "next_execution_at": None}
        return {
            "next_execution_at": calculate_next_execution(
                schedule.schedule_type, schedule.timing_config(), now
            )
        }
