"""Recurrence strategies for RECURRING schedules.

A strategy answers one question: given an expression, a timezone and an
instant, when is the first occurrence strictly after that instant?
All inputs and outputs are naive UTC; the timezone only controls how the
expression is interpreted (``0 6 * * *`` in ``Europe/Sofia`` fires at
06:00 Sofia time, whatever that is in UTC on the day).

Strategies:
- ``CronRecurrence``: standard 5-field cron (and croniter aliases such as
  ``@daily``) via croniter.
- ``IntervalRecurrence``: ``@every <n><s|m|h|d>`` fixed intervals, anchored
  at local midnight.

``resolve_strategy`` picks the right one from the expression text so the
next-run calculator never needs to know which kind it is dealing with.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from core.exceptions import RecurrenceParseError
from core.utils import to_naive_utc

logger = logging.getLogger(__name__)

INTERVAL_PREFIX = "@every"
_INTERVAL_RE = re.compile(r"^@every\s+(\d+)\s*([smhd])$", re.IGNORECASE)
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


class RecurrenceStrategy(Protocol):
    """(expression, timezone, after) -> next occurrence."""

    def validate(self, expression: str, tz: str = "UTC") -> None:
        """Raise ``RecurrenceParseError`` if the expression cannot be used."""
        ...

    def next_after(self, expression: str, tz: str, after: datetime) -> datetime:
        """Return the first occurrence strictly after ``after`` (naive UTC)."""
        ...


def load_timezone(tz: Optional[str]) -> ZoneInfo:
    """Resolve an IANA timezone name, raising ``RecurrenceParseError`` if unknown."""
    name = tz or "UTC"
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise RecurrenceParseError(name, f"unknown timezone ({exc})") from exc


def _as_local(after: datetime, tz_obj: ZoneInfo) -> datetime:
    return to_naive_utc(after).replace(tzinfo=timezone.utc).astimezone(tz_obj)


class CronRecurrence:
    """Cron expressions evaluated with croniter in the schedule's timezone."""

    def validate(self, expression: str, tz: str = "UTC") -> None:
        load_timezone(tz)
        if not expression or not expression.strip():
            raise RecurrenceParseError(expression or "", "expression is empty")
        if not croniter.is_valid(expression.strip()):
            raise RecurrenceParseError(expression, "not a valid cron expression")

    def next_after(self, expression: str, tz: str, after: datetime) -> datetime:
        self.validate(expression, tz)
        tz_obj = load_timezone(tz)
        try:
            cron = croniter(expression.strip(), _as_local(after, tz_obj))
            next_local = cron.get_next(datetime)
        except (ValueError, KeyError) as exc:
            raise RecurrenceParseError(expression, str(exc)) from exc
        return to_naive_utc(next_local)


class IntervalRecurrence:
    """Fixed intervals (``@every 15m``) counted from local midnight.

    The sequence restarts each local day, so intervals that do not divide
    24h produce a shorter final gap before midnight.
    Sub-day steps are measured in elapsed time from the local midnight
    instant; whole-day steps land on a later local midnight.
    """

    def _parse(self, expression: str) -> timedelta:
        match = _INTERVAL_RE.match((expression or "").strip())
        if not match:
            raise RecurrenceParseError(expression or "", "expected '@every <n><s|m|h|d>'")
        amount, unit = int(match.group(1)), match.group(2).lower()
        if amount <= 0:
            raise RecurrenceParseError(expression, "interval must be positive")
        return timedelta(seconds=amount * _UNIT_SECONDS[unit])

    def validate(self, expression: str, tz: str = "UTC") -> None:
        load_timezone(tz)
        self._parse(expression)

    def next_after(self, expression: str, tz: str, after: datetime) -> datetime:
        step = self._parse(expression)
        tz_obj = load_timezone(tz)
        after = to_naive_utc(after)
        local = _as_local(after, tz_obj)

        # Steps are counted in elapsed time from the local midnight instant,
        # so a repeated DST hour never yields a time before ``after``
        midnight = local.replace(hour=0, minute=0, second=0, microsecond=0, fold=0)
        next_midnight = (midnight.replace(tzinfo=None) + timedelta(days=1)).replace(
            tzinfo=tz_obj
        )
        midnight_utc = to_naive_utc(midnight)
        next_midnight_utc = to_naive_utc(next_midnight)

        if step >= timedelta(days=1):
            return to_naive_utc(
                (midnight.replace(tzinfo=None) + step).replace(tzinfo=tz_obj)
            )

        ticks = int((after - midnight_utc) / step) + 1
        candidate = midnight_utc + ticks * step
        return min(candidate, next_midnight_utc)


_CRON = CronRecurrence()
_INTERVAL = IntervalRecurrence()


def resolve_strategy(expression: Optional[str]) -> RecurrenceStrategy:
    """Pick the strategy that understands ``expression``."""
    if expression and expression.strip().lower().startswith(INTERVAL_PREFIX):
        return _INTERVAL
    return _CRON


def iter_occurrences(
    expression: str,
    tz: str,
    after: datetime,
    count: int,
    strategy: Optional[RecurrenceStrategy] = None,
) -> Iterator[datetime]:
    """Yield the next ``count`` occurrences strictly after ``after``."""
    strategy = strategy or resolve_strategy(expression)
    current = after
    for _ in range(count):
        current = strategy.next_after(expression, tz, current)
        yield current
