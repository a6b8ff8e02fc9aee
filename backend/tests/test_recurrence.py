"""Tests for recurrence strategies."""

from datetime import datetime

import pytest

from core.exceptions import RecurrenceParseError
from services.recurrence import (
    CronRecurrence,
    IntervalRecurrence,
    iter_occurrences,
    load_timezone,
    resolve_strategy,
)


# ─── Strategy resolution ───

class TestResolveStrategy:
    def test_cron_by_default(self):
        assert isinstance(resolve_strategy("*/5 * * * *"), CronRecurrence)

    def test_interval_prefix(self):
        assert isinstance(resolve_strategy("@every 2h"), IntervalRecurrence)
        assert isinstance(resolve_strategy("  @EVERY 2h"), IntervalRecurrence)

    def test_none_falls_back_to_cron(self):
        assert isinstance(resolve_strategy(None), CronRecurrence)


# ─── Cron ───

class TestCronRecurrence:
    def test_valid_expression(self):
        CronRecurrence().validate("*/15 9-17 * * 1-5", "Europe/London")

    def test_alias(self):
        result = CronRecurrence().next_after("@daily", "UTC", datetime(2024, 1, 1, 10, 0))
        assert result == datetime(2024, 1, 2, 0, 0)

    @pytest.mark.parametrize("expression", ["", "not a cron", "61 * * * *", "* * *"])
    def test_invalid_expression(self, expression):
        with pytest.raises(RecurrenceParseError):
            CronRecurrence().validate(expression)

    def test_unknown_timezone(self):
        with pytest.raises(RecurrenceParseError) as exc_info:
            CronRecurrence().validate("0 6 * * *", "Nowhere/City")
        assert exc_info.value.expression == "Nowhere/City"

    def test_weekday_schedule(self):
        # 2024-01-05 is a Friday; next weekday 08:00 is Monday 2024-01-08
        result = CronRecurrence().next_after(
            "0 8 * * 1-5", "UTC", datetime(2024, 1, 5, 9, 0)
        )
        assert result == datetime(2024, 1, 8, 8, 0)


# ─── Interval ───

class TestIntervalRecurrence:
    def test_minutes(self):
        result = IntervalRecurrence().next_after("@every 15m", "UTC", datetime(2024, 1, 1, 10, 7))
        assert result == datetime(2024, 1, 1, 10, 15)

    def test_exact_boundary_moves_forward(self):
        result = IntervalRecurrence().next_after("@every 2h", "UTC", datetime(2024, 1, 1, 10, 0))
        assert result == datetime(2024, 1, 1, 12, 0)

    def test_days_anchor_at_midnight(self):
        result = IntervalRecurrence().next_after("@every 1d", "UTC", datetime(2024, 1, 1, 10, 0))
        assert result == datetime(2024, 1, 2, 0, 0)

    def test_uneven_interval_restarts_at_midnight(self):
        result = IntervalRecurrence().next_after("@every 7h", "UTC", datetime(2024, 1, 1, 22, 0))
        assert result == datetime(2024, 1, 2, 0, 0)

    def test_local_midnight_anchor(self):
        # Sofia midnight is 22:00 UTC the previous day in winter
        result = IntervalRecurrence().next_after(
            "@every 6h", "Europe/Sofia", datetime(2024, 1, 1, 21, 0)
        )
        assert result == datetime(2024, 1, 1, 22, 0)

    def test_fall_back_hour_stays_after_now(self):
        # 2024-11-03 06:10 UTC is 01:10 EST, the second pass through 01:xx
        after = datetime(2024, 11, 3, 6, 10)
        result = IntervalRecurrence().next_after("@every 15m", "America/New_York", after)
        assert result == datetime(2024, 11, 3, 6, 15)

    def test_fall_back_first_pass(self):
        # 05:10 UTC is 01:10 EDT, the first pass
        result = IntervalRecurrence().next_after(
            "@every 15m", "America/New_York", datetime(2024, 11, 3, 5, 10)
        )
        assert result == datetime(2024, 11, 3, 5, 15)

    def test_every_tick_through_fall_back_moves_forward(self):
        occurrences = list(
            iter_occurrences("@every 30m", "America/New_York", datetime(2024, 11, 3, 4, 50), 8)
        )
        assert all(b > a for a, b in zip(occurrences, occurrences[1:]))
        assert occurrences[0] == datetime(2024, 11, 3, 5, 0)
        assert occurrences[-1] == datetime(2024, 11, 3, 8, 30)

    @pytest.mark.parametrize("expression", ["@every", "@every 0m", "@every 5w", "every 5m"])
    def test_invalid(self, expression):
        with pytest.raises(RecurrenceParseError):
            IntervalRecurrence().validate(expression)


# ─── Helpers ───

class TestHelpers:
    def test_iter_occurrences(self):
        occurrences = list(iter_occurrences("0 6 * * *", "UTC", datetime(2024, 1, 1, 10, 0), 3))
        assert occurrences == [
            datetime(2024, 1, 2, 6, 0),
            datetime(2024, 1, 3, 6, 0),
            datetime(2024, 1, 4, 6, 0),
        ]

    def test_iter_occurrences_propagates_parse_errors(self):
        with pytest.raises(RecurrenceParseError):
            list(iter_occurrences("bogus", "UTC", datetime(2024, 1, 1), 2))

    def test_load_timezone_default(self):
        assert load_timezone(None).key == "UTC"
