"""
Unit tests for the cron scheduler.
"""

import threading
from datetime import datetime, timezone

import pytest

from usage_ledger.core.scheduler import CronScheduler


class TestCronScheduler:
    def test_invalid_expression(self):
        with pytest.raises(ValueError, match="Invalid cron expression"):
            CronScheduler("flush", "every minute", lambda: None)

    def test_next_fire(self):
        scheduler = CronScheduler("flush", "0,30 * * * *", lambda: None)
        after = datetime(2025, 6, 15, 12, 10, tzinfo=timezone.utc)
        assert scheduler.next_fire(after) == datetime(2025, 6, 15, 12, 30, tzinfo=timezone.utc)
        after = datetime(2025, 6, 15, 12, 30, tzinfo=timezone.utc)
        assert scheduler.next_fire(after) == datetime(2025, 6, 15, 13, 0, tzinfo=timezone.utc)

    def test_failing_job_is_contained(self):
        calls = []

        def job():
            calls.append(1)
            raise RuntimeError("boom")

        scheduler = CronScheduler("settle", "0 * * * *", job)
        scheduler.run_once()
        scheduler.run_once()
        assert len(calls) == 2

    def test_job_runs_on_schedule(self):
        fired = threading.Event()
        scheduler = CronScheduler("tick", "* * * * * *", fired.set)
        scheduler.start()
        try:
            assert scheduler.running
            assert fired.wait(timeout=5)
        finally:
            scheduler.stop(timeout=5)
        assert not scheduler.running

    def test_stop_before_first_fire(self):
        scheduler = CronScheduler("monthly", "0 0 1 * *", lambda: None)
        scheduler.start()
        scheduler.stop(timeout=5)
        assert not scheduler.running
