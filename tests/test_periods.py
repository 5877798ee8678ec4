"""
Unit tests for monthly period arithmetic.
"""

from datetime import datetime, timedelta, timezone

from usage_ledger.core.periods import (
    days_remaining,
    format_period,
    period_end,
    period_of,
    period_start,
)


class TestPeriods:
    def test_period_bounds(self):
        assert period_start(2025, 2) == datetime(2025, 2, 1, tzinfo=timezone.utc)
        assert period_end(2025, 2) == datetime(2025, 2, 28, 23, 59, 59, 999000, tzinfo=timezone.utc)
        assert period_end(2024, 2).day == 29

    def test_period_of_converts_to_utc(self):
        tokyo = timezone(timedelta(hours=9))
        assert period_of(datetime(2025, 7, 1, 3, 0, tzinfo=tokyo)) == (2025, 6)

    def test_format_period(self):
        assert format_period(2025, 3) == "2025-03"

    def test_days_remaining(self):
        end = period_end(2025, 6)
        assert days_remaining(end, datetime(2025, 6, 20, tzinfo=timezone.utc)) == 10
        assert days_remaining(end, datetime(2025, 7, 1, tzinfo=timezone.utc)) == 0
        assert days_remaining(None) == 0
