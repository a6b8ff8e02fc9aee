"""Schedule validation and timing-conflict detection.

``ScheduleValidator.validate`` never raises for configuration problems; it
returns a ``ValidationResult`` whose ``errors`` block persistence and whose
``warnings`` are informational. Conflict checks compare the candidate with
the owner's other *enabled* schedules on the same account:

- RECURRING vs RECURRING: identical expression and timezone
- SPECIFIC_DATES vs SPECIFIC_DATES: any shared date (one entry per date)
- DATE_RANGE vs DATE_RANGE: identical from/to pair

Each conflict carries suggested alternative times (+1h, +2h, +3h and the
same time the next day).
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas.schedule import ScheduleBase, ScheduleConflict, ValidationResult
from app.config import get_settings
from core.constants import ScheduleType
from core.exceptions import RecurrenceParseError
from core.utils import isoformat_utc, parse_datetimes, to_naive_utc, utcnow_naive
from db.models.schedule import Schedule
from services.recurrence import resolve_strategy

logger = logging.getLogger(__name__)


def suggest_alternative_times(base: datetime) -> List[datetime]:
    """Suggest +1h, +2h, +3h and same-time-next-day alternatives to ``base``."""
    alternatives = [base + timedelta(hours=i) for i in range(1, 4)]
    alternatives.append(base + timedelta(days=1))
    return alternatives


class ScheduleValidator:
    """Validates schedule definitions against the rules and existing schedules."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.settings = get_settings()

    # ─── Public API ────────────────────────────────────────

    async def validate(
        self,
        config: ScheduleBase,
        exclude_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ValidationResult:
        """Validate ``config``; conflict checks run when owner and account are known."""
        now = to_naive_utc(now) if now else utcnow_naive()
        errors: List[str] = []
        warnings: List[str] = []
        conflicts: List[ScheduleConflict] = []

        schedule_type = ScheduleType(config.schedule_type)
        if schedule_type == ScheduleType.DATE_RANGE:
            self._check_date_range(config, now, errors, warnings)
        elif schedule_type == ScheduleType.RECURRING:
            self._check_recurring(config, errors)
        elif schedule_type == ScheduleType.SPECIFIC_DATES:
            self._check_specific_dates(config, now, errors, warnings)

        if config.batch_size < 1:
            errors.append("Batch size must be at least 1.")
        elif config.batch_size > self.settings.MAX_EMAILS_PER_EXECUTION:
            warnings.append(
                f"Batch size {config.batch_size} exceeds the per-execution cap of "
                f"{self.settings.MAX_EMAILS_PER_EXECUTION}; the cap will apply."
            )

        user_id = getattr(config, "user_id", None)
        account_id = getattr(config, "email_account_id", None)
        if user_id and account_id and not errors:
            conflicts = await self._scoped_conflicts(
                config, schedule_type, user_id, account_id, exclude_id, now
            )
            errors.extend(self._describe(conflicts))

        return ValidationResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            conflicts=conflicts,
        )

    async def check_cron_conflicts(
        self,
        cron_expression: str,
        timezone: str = "UTC",
        exclude_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[ScheduleConflict]:
        """Find enabled schedules (any owner) sharing this expression and timezone."""
        now = to_naive_utc(now) if now else utcnow_naive()
        return await self._recurring_conflicts(
            cron_expression, timezone, exclude_id, now, scope=None
        )

    async def check_specific_date_conflicts(
        self,
        specific_dates: Iterable[datetime],
        exclude_id: Optional[str] = None,
    ) -> List[ScheduleConflict]:
        """Find enabled SPECIFIC_DATES schedules (any owner) sharing any of these dates."""
        return await self._specific_date_conflicts(
            parse_datetimes(specific_dates), exclude_id, scope=None
        )

    # ─── Per-type field checks ─────────────────────────────

    def _check_date_range(self, config, now, errors, warnings) -> None:
        if not config.date_range_from or not config.date_range_to:
            errors.append("Date range is required for date range schedules.")
            return
        if config.date_range_from >= config.date_range_to:
            errors.append("Date range from must be before date range to.")
            return
        if config.date_range_to > now:
            warnings.append(
                "Date range ends in the future; emails after the run time will not be included."
            )

    def _check_recurring(self, config, errors) -> None:
        if not config.cron_expression:
            errors.append("Cron expression is required for recurring schedules.")
            return
        if not config.timezone:
            errors.append("Timezone is required for recurring schedules.")
            return
        try:
            resolve_strategy(config.cron_expression).validate(
                config.cron_expression, config.timezone
            )
        except RecurrenceParseError as exc:
            errors.append(f"{exc.message}. Please check the format.")

    def _check_specific_dates(self, config, now, errors, warnings) -> None:
        if not config.specific_dates:
            errors.append("Specific dates are required for specific date schedules.")
            return
        dates = parse_datetimes(config.specific_dates)
        future = [d for d in dates if d > now]
        if not future:
            errors.append("No future specific dates found.")
            return
        past = len(dates) - len(future)
        if past:
            warnings.append(f"{past} specific date(s) are in the past and will be ignored.")
        if len(set(dates)) != len(dates):
            warnings.append("Duplicate specific dates will only run once.")

    # ─── Conflict detection ────────────────────────────────

    async def _scoped_conflicts(
        self, config, schedule_type, user_id, account_id, exclude_id, now
    ) -> List[ScheduleConflict]:
        scope = (user_id, account_id)
        if schedule_type == ScheduleType.RECURRING:
            return await self._recurring_conflicts(
                config.cron_expression, config.timezone, exclude_id, now, scope=scope
            )
        if schedule_type == ScheduleType.SPECIFIC_DATES:
            return await self._specific_date_conflicts(
                parse_datetimes(config.specific_dates or []), exclude_id, scope=scope
            )
        return await self._date_range_conflicts(
            config.date_range_from, config.date_range_to, exclude_id, scope=scope
        )

    async def _candidates(
        self,
        schedule_type: ScheduleType,
        exclude_id: Optional[str],
        scope: Optional[tuple],
    ) -> Sequence[Schedule]:
        stmt = (
            select(Schedule)
            .where(Schedule.schedule_type == schedule_type.value)
            .where(Schedule.is_enabled == True)  # noqa: E712
        )
        if scope:
            stmt = stmt.where(Schedule.user_id == scope[0]).where(
                Schedule.email_account_id == scope[1]
            )
        if exclude_id:
            stmt = stmt.where(Schedule.id != exclude_id)
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def _recurring_conflicts(
        self, cron_expression, timezone, exclude_id, now, scope
    ) -> List[ScheduleConflict]:
        expression = (cron_expression or "").strip()
        timezone = timezone or "UTC"
        existing = [
            s
            for s in await self._candidates(ScheduleType.RECURRING, exclude_id, scope)
            if (s.cron_expression or "").strip() == expression
            and (s.timezone or "UTC") == timezone
        ]
        if not existing:
            return []

        try:
            conflict_time = resolve_strategy(expression).next_after(expression, timezone, now)
        except RecurrenceParseError as exc:
            logger.error(f"[validator] Invalid cron expression '{expression}': {exc.message}")
            conflict_time = None

        return [
            ScheduleConflict(
                conflict_type=ScheduleType.RECURRING,
                conflict_time=conflict_time,
                conflicting_schedule_ids=[s.id for s in existing],
                conflicting_schedules=[s.name for s in existing],
                suggested_alternatives=(
                    suggest_alternative_times(conflict_time) if conflict_time else []
                ),
            )
        ]

    async def _specific_date_conflicts(
        self, dates: List[datetime], exclude_id, scope
    ) -> List[ScheduleConflict]:
        if not dates:
            return []
        existing = await self._candidates(ScheduleType.SPECIFIC_DATES, exclude_id, scope)

        conflicts: List[ScheduleConflict] = []
        for date in sorted(set(dates)):
            colliding = [s for s in existing if date in set(s.parsed_specific_dates)]
            if colliding:
                conflicts.append(
                    ScheduleConflict(
                        conflict_type=ScheduleType.SPECIFIC_DATES,
                        conflict_time=date,
                        conflicting_schedule_ids=[s.id for s in colliding],
                        conflicting_schedules=[s.name for s in colliding],
                        suggested_alternatives=suggest_alternative_times(date),
                    )
                )
        return conflicts

    async def _date_range_conflicts(
        self, date_from, date_to, exclude_id, scope
    ) -> List[ScheduleConflict]:
        if not date_from or not date_to:
            return []
        existing = [
            s
            for s in await self._candidates(ScheduleType.DATE_RANGE, exclude_id, scope)
            if s.date_range_from == date_from and s.date_range_to == date_to
        ]
        if not existing:
            return []
        return [
            ScheduleConflict(
                conflict_type=ScheduleType.DATE_RANGE,
                conflict_time=date_from,
                conflicting_schedule_ids=[s.id for s in existing],
                conflicting_schedules=[s.name for s in existing],
            )
        ]

    @staticmethod
    def _describe(conflicts: List[ScheduleConflict]) -> List[str]:
        messages = []
        for conflict in conflicts:
            names = ", ".join(conflict.conflicting_schedules)
            if conflict.conflict_type == ScheduleType.RECURRING:
                messages.append(
                    "A recurring schedule with the same cron expression and timezone "
                    f"already exists for this account ({names})."
                )
            elif conflict.conflict_type == ScheduleType.SPECIFIC_DATES:
                messages.append(
                    f"Specific date {isoformat_utc(conflict.conflict_time)} is already "
                    f"scheduled for this account ({names})."
                )
            else:
                messages.append(
                    "A date range schedule with the same dates already exists "
                    f"for this account ({names})."
                )
        return messages
