"""
Utility functions for the email schedule engine.

Includes:
- UTC datetime helpers
- Datetime parsing for JSON-stored date lists

All timestamps persisted by the engine are **naive UTC** so that they
compare cleanly against ``TIMESTAMP WITHOUT TIME ZONE`` columns and
SQLite's timezone-less storage.
"""

from datetime import datetime, timezone
from typing import Iterable, List, Union

DateLike = Union[datetime, str]


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def utcnow_naive() -> datetime:
    """Return the current UTC time as a **naive** datetime."""
    return utc_now().replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """
    Normalise a datetime to naive UTC.

    Aware values are converted to UTC first; naive values are assumed
    to already be UTC and returned unchanged.
    """
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_datetime(value: DateLike) -> datetime:
    """
    Parse an ISO-8601 string (or pass through a datetime) into naive UTC.

    A trailing ``Z`` is accepted as UTC.

    Raises:
        ValueError: If the string is not a valid ISO-8601 timestamp
    """
    if isinstance(value, datetime):
        return to_naive_utc(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(text))


def parse_datetimes(values: Iterable[DateLike]) -> List[datetime]:
    """Parse a list of ISO strings / datetimes into naive UTC datetimes."""
    return [parse_datetime(v) for v in values]


def isoformat_utc(value: datetime) -> str:
    """Serialise a naive-UTC datetime as ISO-8601 with a ``Z`` suffix."""
    return to_naive_utc(value).isoformat() + "Z"
