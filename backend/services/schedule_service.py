"""Schedule service: CRUD, validation and reporting for processing schedules.

Callers own the transaction (the service only flushes). ``execute_now``
is the exception in spirit: the runner writes through its own sessions, so
the schedule must already be committed when it is called.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional, Sequence, Union

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas.execution import (
    ExecutionError,
    ExecutionProgress,
    ExecutionStatusResponse,
    ExecutionTiming,
)
from api.schemas.schedule import (
    REQUIRED_FIELDS,
    TIMING_FIELDS,
    BulkToggleResult,
    CalendarEntry,
    ProcessingAnalytics,
    RecentExecution,
    ScheduleConflict,
    ScheduleCreate,
    ScheduleUpdate,
    ValidationResult,
)
from app.config import get_settings
from core.constants import EmailCategory, ExecutionStatus, Priority, ScheduleType
from core.exceptions import (
    NotFoundError,
    RecurrenceParseError,
    ScheduleConflictError,
    ScheduleEngineError,
    ScheduleValidationError,
)
from core.utils import isoformat_utc, to_naive_utc, utcnow_naive
from db.models.execution import Execution
from db.models.schedule import Schedule
from services.base import BaseService
from services.execution_runner import ExecutionRunner
from services.next_run import calculate_next_execution
from services.recurrence import iter_occurrences
from services.schedule_validator import ScheduleValidator

logger = logging.getLogger(__name__)

DEFAULT_SCHEDULE_NAME = "Initial"
DEFAULT_EMAIL_TYPE_PRIORITIES = {
    EmailCategory.APPOINTMENT.value: Priority.HIGH.value,
    EmailCategory.INVOICE.value: Priority.HIGH.value,
    EmailCategory.WORK.value: Priority.MEDIUM.value,
}


class ScheduleService(BaseService[Schedule]):
    """Service for processing schedule management."""

    def __init__(self, db: AsyncSession, runner: Optional[ExecutionRunner] = None):
        super().__init__(Schedule, db)
        self.runner = runner
        self.validator = ScheduleValidator(db)
        self.settings = get_settings()

    # ─── CRUD ──────────────────────────────────────────────

    async def create_schedule(
        self,
        data: Union[ScheduleCreate, dict],
        now: Optional[datetime] = None,
    ) -> Schedule:
        """Validate and persist a new schedule.

        Raises:
            ScheduleConflictError: Timing collides with an enabled schedule
            ScheduleValidationError: Configuration is malformed
        """
        if isinstance(data, dict):
            data = ScheduleCreate(**data)
        now = to_naive_utc(now) if now else utcnow_naive()

        result = await self.validator.validate(data, now=now)
        self._raise_if_invalid(result)

        values = self._to_columns(data.model_dump())
        values["created_at"] = now
        values["updated_at"] = now
        values["next_execution_at"] = calculate_next_execution(
            data.schedule_type, data.model_dump(), now
        )
        schedule = await self.create(values)

        for warning in result.warnings:
            logger.info(f"[schedule-service] Schedule '{schedule.name}': {warning}")
        logger.info(
            f"[schedule-service] Created {schedule.schedule_type} schedule "
            f"'{schedule.name}' ({schedule.id}), next run {schedule.next_execution_at}"
        )
        return schedule

    async def update_schedule(
        self,
        schedule_id: str,
        data: Union[ScheduleUpdate, dict],
        now: Optional[datetime] = None,
    ) -> Schedule:
        """Apply a partial update; recompute the next run when timing changes.

        Raises:
            NotFoundError: Unknown schedule
            ScheduleConflictError / ScheduleValidationError: As for create
        """
        if isinstance(data, dict):
            data = ScheduleUpdate(**data)
        now = to_naive_utc(now) if now else utcnow_naive()
        schedule = await self.get_schedule(schedule_id)

        changes = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key not in REQUIRED_FIELDS
        }
        try:
            merged = ScheduleCreate(**{**self._current_definition(schedule), **changes})
        except ValidationError as exc:
            raise ScheduleValidationError(
                errors=[f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in exc.errors()]
            ) from exc
        timing_changed = bool(TIMING_FIELDS & changes.keys())
        enabling = changes.get("is_enabled") is True and not schedule.is_enabled
        # Renames and priority changes are not re-validated
        if timing_changed or enabling or "batch_size" in changes:
            result = await self.validator.validate(merged, exclude_id=schedule_id, now=now)
            self._raise_if_invalid(result)

        values = self._to_columns(changes)
        if timing_changed or enabling:
            values["next_execution_at"] = calculate_next_execution(
                merged.schedule_type, merged.model_dump(), now
            )
        for key, value in values.items():
            setattr(schedule, key, value)
        schedule.updated_at = now

        await self.db.flush()
        await self.db.refresh(schedule)
        logger.info(
            f"[schedule-service] Updated schedule '{schedule.name}' ({schedule.id}): "
            f"{', '.join(sorted(changes)) or 'no changes'}"
        )
        return schedule

    async def delete_schedule(self, schedule_id: str) -> None:
        """Delete a schedule and its execution history.

        Raises:
            NotFoundError: Unknown schedule
        """
        schedule = await self.get_schedule(schedule_id)
        await self.db.execute(delete(Execution).where(Execution.schedule_id == schedule_id))
        await self.db.delete(schedule)
        await self.db.flush()
        logger.info(f"[schedule-service] Deleted schedule '{schedule.name}' ({schedule_id})")

    async def get_schedule(self, schedule_id: str) -> Schedule:
        schedule = await self.get_by_id(schedule_id)
        if schedule is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        return schedule

    async def list_user_schedules(self, user_id: str) -> Sequence[Schedule]:
        result = await self.db.execute(
            select(Schedule)
            .where(Schedule.user_id == user_id)
            .order_by(Schedule.created_at.desc())
        )
        return result.scalars().all()

    async def list_account_schedules(self, email_account_id: str) -> Sequence[Schedule]:
        result = await self.db.execute(
            select(Schedule)
            .where(Schedule.email_account_id == email_account_id)
            .order_by(Schedule.created_at.desc())
        )
        return result.scalars().all()

    async def create_default_schedule_for_account(
        self,
        user_id: str,
        email_account_id: str,
        now: Optional[datetime] = None,
    ) -> Schedule:
        """Create the account's disabled "Initial" schedule over the last month.

        Idempotent: an existing default schedule is returned unchanged.
        """
        existing = await self.db.execute(
            select(Schedule)
            .where(Schedule.email_account_id == email_account_id)
            .where(Schedule.is_default == True)  # noqa: E712
            .limit(1)
        )
        schedule = existing.scalar_one_or_none()
        if schedule is not None:
            return schedule

        now = to_naive_utc(now) if now else utcnow_naive()
        return await self.create_schedule(
            ScheduleCreate(
                user_id=user_id,
                email_account_id=email_account_id,
                name=DEFAULT_SCHEDULE_NAME,
                description="Process the last month of email for a newly connected account",
                schedule_type=ScheduleType.DATE_RANGE,
                date_range_from=now - timedelta(days=self.settings.DEFAULT_SCHEDULE_LOOKBACK_DAYS),
                date_range_to=now,
                is_enabled=False,
                is_default=True,
                batch_size=self.settings.DEFAULT_BATCH_SIZE,
                email_type_priorities=dict(DEFAULT_EMAIL_TYPE_PRIORITIES),
                sender_priorities={},
            ),
            now=now,
        )

    # ─── Execution ─────────────────────────────────────────

    async def execute_now(self, schedule_id: str) -> Execution:
        """Run a schedule immediately, outside the poller and without a lock.

        Raises:
            NotFoundError: Unknown schedule
            Exception: Whatever the run raised (the execution is FAILED)
        """
        if self.runner is None:
            raise ScheduleEngineError("No execution runner configured")
        schedule = await self.get_schedule(schedule_id)
        logger.info(f"[schedule-service] Manual run of schedule '{schedule.name}'")
        try:
            return await self.runner.execute(schedule)
        finally:
            await self.db.refresh(schedule)

    async def get_execution_status(self, schedule_id: str) -> ExecutionStatusResponse:
        """Progress of the schedule's latest execution.

        A schedule that never ran reports a CANCELLED placeholder keyed by the
        schedule id.
        """
        schedule = await self.get_schedule(schedule_id)
        result = await self.db.execute(
            select(Execution)
            .where(Execution.schedule_id == schedule_id)
            .order_by(Execution.started_at.desc())
            .limit(1)
        )
        execution = result.scalar_one_or_none()

        if execution is None:
            return ExecutionStatusResponse(
                id=schedule.id,
                schedule_id=schedule.id,
                schedule_name=schedule.name,
                status=ExecutionStatus.CANCELLED.value,
                progress=ExecutionProgress(),
                timing=ExecutionTiming(started_at=schedule.created_at),
            )

        error = None
        if execution.error_message:
            error = ExecutionError(
                message=execution.error_message, details=execution.error_details
            )
        return ExecutionStatusResponse(
            id=execution.id,
            schedule_id=schedule.id,
            schedule_name=schedule.name,
            status=execution.status,
            progress=ExecutionProgress(
                total_batches=execution.total_batches_count or 0,
                completed_batches=execution.completed_batches_count or 0,
                total_emails=execution.total_emails_count or 0,
                processed_emails=execution.processed_emails_count or 0,
                failed_emails=execution.failed_emails_count or 0,
                completion_percentage=execution.completion_percentage,
            ),
            timing=ExecutionTiming(
                started_at=execution.started_at,
                completed_at=execution.completed_at,
                processing_duration_ms=execution.processing_duration_ms,
            ),
            error=error,
        )

    # ─── Validation ────────────────────────────────────────

    async def validate(
        self,
        data: Union[ScheduleCreate, dict],
        exclude_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ValidationResult:
        """Validate a candidate configuration without persisting anything."""
        if isinstance(data, dict):
            data = ScheduleCreate(**data)
        return await self.validator.validate(data, exclude_id=exclude_id, now=now)

    async def check_conflicts(
        self,
        cron_expression: Optional[str] = None,
        timezone: str = "UTC",
        specific_dates: Optional[Iterable[datetime]] = None,
        exclude_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[ScheduleConflict]:
        """Conflicts of a cron expression and/or date list with any enabled schedule."""
        conflicts: List[ScheduleConflict] = []
        if cron_expression:
            conflicts.extend(
                await self.validator.check_cron_conflicts(
                    cron_expression, timezone, exclude_id=exclude_id, now=now
                )
            )
        if specific_dates:
            conflicts.extend(
                await self.validator.check_specific_date_conflicts(
                    specific_dates, exclude_id=exclude_id
                )
            )
        return conflicts

    # ─── Reporting ─────────────────────────────────────────

    async def get_calendar(
        self,
        count: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[CalendarEntry]:
        """Next ``count`` occurrences of every enabled recurring schedule."""
        count = count or self.settings.CALENDAR_OCCURRENCES
        now = to_naive_utc(now) if now else utcnow_naive()
        result = await self.db.execute(
            select(Schedule)
            .where(Schedule.is_enabled == True)  # noqa: E712
            .where(Schedule.schedule_type == ScheduleType.RECURRING.value)
            .where(Schedule.cron_expression != None)  # noqa: E711
            .order_by(Schedule.created_at.asc())
        )

        entries = []
        for schedule in result.scalars().all():
            entry = CalendarEntry(
                schedule_id=schedule.id,
                schedule_name=schedule.name,
                user_id=schedule.user_id,
                email_account_id=schedule.email_account_id,
                cron_expression=schedule.cron_expression,
                timezone=schedule.timezone,
            )
            try:
                entry.next_executions = list(
                    iter_occurrences(schedule.cron_expression, schedule.timezone, now, count)
                )
            except RecurrenceParseError as exc:
                logger.error(
                    f"[schedule-service] Invalid cron expression for schedule "
                    f"{schedule.id}: {schedule.cron_expression}"
                )
                entry.error = exc.message
            entries.append(entry)
        return entries

    async def bulk_set_enabled(
        self,
        schedule_ids: Iterable[str],
        enabled: bool,
        now: Optional[datetime] = None,
    ) -> BulkToggleResult:
        """Enable or disable many schedules; enabling recomputes their next run."""
        now = to_naive_utc(now) if now else utcnow_naive()
        ids = list(dict.fromkeys(schedule_ids))
        result = await self.db.execute(select(Schedule).where(Schedule.id.in_(ids)))
        found = {s.id: s for s in result.scalars().all()}

        outcome = BulkToggleResult(enabled=enabled)
        for schedule_id in ids:
            schedule = found.get(schedule_id)
            if schedule is None:
                outcome.not_found.append(schedule_id)
                continue
            schedule.is_enabled = enabled
            if enabled:
                schedule.next_execution_at = calculate_next_execution(
                    schedule.schedule_type, schedule.timing_config(), now
                )
            schedule.updated_at = now
            outcome.updated.append(schedule_id)

        await self.db.flush()
        logger.info(
            f"[schedule-service] Bulk {'enabled' if enabled else 'disabled'} "
            f"{len(outcome.updated)} schedule(s); {len(outcome.not_found)} not found"
        )
        return outcome

    async def get_analytics(
        self,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> ProcessingAnalytics:
        """Aggregate schedule and execution statistics for one user."""
        now = to_naive_utc(now) if now else utcnow_naive()
        schedules = await self.list_user_schedules(user_id)
        names = {s.id: s.name for s in schedules}
        analytics = ProcessingAnalytics(
            user_id=user_id,
            total_schedules=len(schedules),
            active_schedules=sum(1 for s in schedules if s.is_enabled),
        )
        if not schedules:
            return analytics

        result = await self.db.execute(
            select(Execution)
            .where(Execution.schedule_id.in_(list(names)))
            .order_by(Execution.started_at.desc())
        )
        executions = result.scalars().all()

        analytics.total_executions = len(executions)
        analytics.successful_executions = sum(
            1 for e in executions if e.status == ExecutionStatus.COMPLETED.value
        )
        analytics.failed_executions = sum(
            1 for e in executions if e.status == ExecutionStatus.FAILED.value
        )
        if executions:
            analytics.average_processing_time_ms = sum(
                e.processing_duration_ms or 0 for e in executions
            ) / len(executions)

        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        analytics.emails_processed_today = _processed_since(executions, today)
        analytics.emails_processed_this_week = _processed_since(
            executions, today - timedelta(days=7)
        )
        analytics.emails_processed_this_month = _processed_since(
            executions, today - timedelta(days=30)
        )
        analytics.recent_executions = [
            RecentExecution(
                id=e.id,
                schedule_name=names.get(e.schedule_id, "Unknown"),
                status=e.status,
                started_at=e.started_at,
                completed_at=e.completed_at,
                processed_emails=e.processed_emails_count or 0,
                failed_emails=e.failed_emails_count or 0,
            )
            for e in executions[:5]
        ]
        return analytics

    # ─── Helpers ───────────────────────────────────────────

    @staticmethod
    def _raise_if_invalid(result: ValidationResult) -> None:
        if result.valid:
            return
        message = "; ".join(result.errors)
        if result.conflicts:
            raise ScheduleConflictError(
                message,
                errors=result.errors,
                warnings=result.warnings,
                conflicts=result.conflicts,
            )
        raise ScheduleValidationError(message, errors=result.errors, warnings=result.warnings)

    @staticmethod
    def _to_columns(values: dict[str, Any]) -> dict[str, Any]:
        columns = dict(values)
        if isinstance(columns.get("schedule_type"), ScheduleType):
            columns["schedule_type"] = columns["schedule_type"].value
        if columns.get("specific_dates") is not None:
            columns["specific_dates"] = [
                isoformat_utc(d) for d in sorted(set(columns["specific_dates"]))
            ]
        return columns

    @staticmethod
    def _current_definition(schedule: Schedule) -> dict[str, Any]:
        return {
            "user_id": schedule.user_id,
            "email_account_id": schedule.email_account_id,
            "name": schedule.name,
            "description": schedule.description,
            "schedule_type": schedule.schedule_type,
            "date_range_from": schedule.date_range_from,
            "date_range_to": schedule.date_range_to,
            "cron_expression": schedule.cron_expression,
            "timezone": schedule.timezone,
            "specific_dates": schedule.parsed_specific_dates or None,
            "is_enabled": schedule.is_enabled,
            "is_default": schedule.is_default,
            "batch_size": schedule.batch_size,
            "email_type_priorities": schedule.email_type_priorities,
            "sender_priorities": schedule.sender_priorities,
        }


def _processed_since(executions: Sequence[Execution], since: datetime) -> int:
    return sum(e.processed_emails_count or 0 for e in executions if e.started_at >= since)
