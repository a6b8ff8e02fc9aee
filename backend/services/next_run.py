"""Next-run calculation for processing schedules.

``calculate_next_execution`` is a pure function of the schedule type, its
timing configuration and "now": it performs no I/O and never reads the
clock, so callers (and tests) always pass ``now`` explicitly.

- DATE_RANGE: due immediately (one-shot)
- RECURRING: first recurrence strictly after now, in the schedule timezone
- SPECIFIC_DATES: earliest configured date strictly after now

Returns **naive UTC** datetimes, or None when the schedule has nothing left
to run (dormant SPECIFIC_DATES) or its expression cannot be parsed.
"""

import logging
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Union

from core.constants import ScheduleType
from core.exceptions import RecurrenceParseError
from core.utils import DateLike, parse_datetimes, to_naive_utc
from services.recurrence import RecurrenceStrategy, resolve_strategy

logger = logging.getLogger(__name__)


def next_specific_date(dates: Iterable[DateLike], now: datetime) -> Optional[datetime]:
    """Return the earliest date strictly after ``now``, or None."""
    now = to_naive_utc(now)
    future = sorted(d for d in parse_datetimes(dates) if d > now)
    return future[0] if future else None


def next_recurrence(
    expression: Optional[str],
    tz: Optional[str],
    now: datetime,
    strategy: Optional[RecurrenceStrategy] = None,
) -> Optional[datetime]:
    """Return the next recurrence after ``now``; None if it cannot be computed.

    Parse failures are logged and swallowed: the schedule stays enabled
    but never becomes due until its expression is corrected.
    """
    if not expression:
        return None
    strategy = strategy or resolve_strategy(expression)
    try:
        return strategy.next_after(expression, tz or "UTC", to_naive_utc(now))
    except RecurrenceParseError as exc:
        logger.error(
            f"[next-run] Cannot compute next run for '{expression}' "
            f"tz={tz}: {exc.message}"
        )
        return None


def calculate_next_execution(
    schedule_type: Union[ScheduleType, str],
    config: Mapping[str, Any],
    now: datetime,
    strategy: Optional[RecurrenceStrategy] = None,
) -> Optional[datetime]:
    """Compute the next due instant for a schedule.

    Args:
        schedule_type: DATE_RANGE, RECURRING or SPECIFIC_DATES
        config: Timing fields (``cron_expression``, ``timezone``,
            ``specific_dates``; date-range bounds are not needed)
        now: The reference instant (naive or aware; normalised to naive UTC)
        strategy: Override the recurrence strategy for RECURRING schedules

    Returns:
        Next due instant as naive UTC, or None
    """
    now = to_naive_utc(now)
    schedule_type = ScheduleType(schedule_type)

    if schedule_type == ScheduleType.DATE_RANGE:
        return now

    if schedule_type == ScheduleType.RECURRING:
        return next_recurrence(
            config.get("cron_expression"),
            config.get("timezone"),
            now,
            strategy=strategy,
        )

    if schedule_type == ScheduleType.SPECIFIC_DATES:
        return next_specific_date(config.get("specific_dates") or [], now)

    return None
