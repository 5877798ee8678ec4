"""
Unit tests for the settlement engine.

Tests the claim protocol, failure isolation and all-or-nothing settlement.
"""

import json
import os
import sqlite3
import tempfile
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta, timezone

from usage_ledger.core.aggregation import AggregationEngine
from usage_ledger.core.ledger import QuotaLedger
from usage_ledger.core.settlement import SettlementEngine
from usage_ledger.storage.db import get_connection
from usage_ledger.storage.models import BatchStatus, RawBatch, UsageEvent
from usage_ledger.storage.repository import RawEventRepository, initialize_schema
from usage_ledger.storage.rollups import RollupRepository

SONNET = "claude-sonnet-4-20250514"
DAY = date(2025, 6, 15)
NOW = datetime(2025, 6, 15, 13, 0, tzinfo=timezone.utc)


def _event(user_id="alice", model=SONNET):
    return UsageEvent(
        user_id=user_id,
        timestamp=datetime(2025, 6, 15, 12, 30, tzinfo=timezone.utc),
        model=model,
        input_tokens=200,
        output_tokens=100,
        latency_ms=250,
    )


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class TestSettlementEngine:
    """Test settlement of pending raw batches."""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "test.db")
        initialize_schema(self.db_path)
        self.clock = Clock(NOW)
        self.raw_store = RawEventRepository(self.db_path)
        self.aggregation = AggregationEngine(self.db_path, clock=self.clock)
        self.ledger = QuotaLedger(self.db_path, clock=self.clock)
        self.engine = SettlementEngine(self.raw_store, self.aggregation, ledger=self.ledger,
                                       clock=self.clock)
        self.rollups = RollupRepository(self.db_path)

    def teardown_method(self):
        self.temp_dir.cleanup()

    def _insert(self, events, created_at=NOW):
        batch = RawBatch.create(events, now=created_at)
        self.raw_store.insert(batch)
        return batch

    def test_no_pending_batches(self):
        assert self.engine.settle() == 0

    def test_settles_all_pending_batches(self):
        first = self._insert([_event(), _event("bob")])
        second = self._insert([_event()], created_at=NOW + timedelta(seconds=1))

        assert self.engine.settle() == 2

        assert self.raw_store.get(first.id).processed
        assert self.raw_store.get(second.id).processed
        assert self.rollups.get_user_usage(DAY, "alice").request_count == 2
        assert self.rollups.get_user_usage(DAY, "bob").request_count == 1
        assert self.engine.settle() == 0

    def test_failed_batch_does_not_block_others(self):
        good = self._insert([_event()])
        bad = self._insert([_event("bob", model="unpriced-model")])
        later = self._insert([_event("carol")], created_at=NOW + timedelta(seconds=1))

        assert self.engine.settle() == 2

        assert self.raw_store.get(good.id).processed
        assert self.raw_store.get(later.id).processed
        assert self.raw_store.get(bad.id).status is BatchStatus.PENDING
        assert self.rollups.get_user_usage(DAY, "bob") is None

    def test_undecodable_batch_does_not_block_others(self):
        bad = self._insert([_event("bob")])
        invalid = self._insert([_event("carol")], created_at=NOW + timedelta(seconds=1))
        good = self._insert([_event()], created_at=NOW + timedelta(seconds=2))
        events = [item.to_dict() for item in invalid.events]
        events[0]["input_tokens"] = -1
        conn = get_connection(self.db_path)
        try:
            conn.execute("UPDATE raw_event_batch SET events = ? WHERE id = ?", ("[{", bad.id))
            conn.execute("UPDATE raw_event_batch SET events = ? WHERE id = ?",
                         (json.dumps(events), invalid.id))
        finally:
            conn.close()

        assert self.engine.settle() == 1

        assert self.raw_store.get(good.id).processed
        assert self.raw_store.count_by_status() == {"pending": 2, "processing": 0, "processed": 1}
        assert self.rollups.get_user_usage(DAY, "carol") is None
        assert self.rollups.get_user_usage(DAY, "alice").request_count == 1

    def test_failure_after_aggregation_rolls_everything_back(self, monkeypatch):
        batch = self._insert([_event()])

        def broken_mark(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(self.raw_store, "mark_processed", broken_mark)
        assert self.engine.settle() == 0

        assert self.raw_store.get(batch.id).status is BatchStatus.PENDING
        assert self.rollups.get_user_usage(DAY, "alice") is None
        assert self.rollups.get_system_stats(DAY) is None

    def test_claimed_batch_is_skipped(self):
        batch = self._insert([_event()])
        assert self.raw_store.claim(batch.id, now=NOW)

        assert self.engine.settle() == 0
        assert self.rollups.get_user_usage(DAY, "alice") is None

    def test_stale_claim_is_reclaimed(self):
        batch = self._insert([_event()])
        self.raw_store.claim(batch.id, now=NOW - timedelta(hours=3))

        assert self.engine.settle() == 1
        assert self.raw_store.get(batch.id).processed

    def test_concurrent_settlement_counts_each_batch_once(self):
        for i in range(10):
            self._insert([_event(), _event()], created_at=NOW + timedelta(milliseconds=i))

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: self.engine.settle(), range(4)))

        assert sum(results) == 10
        assert self.rollups.get_user_usage(DAY, "alice").request_count == 20
        assert self.raw_store.count_by_status()["processed"] == 10

    def test_resettling_a_reset_batch_double_counts(self):
        """Recovery reset is an operator action; the rollups must be cleared first."""
        batch = self._insert([_event()])
        self.engine.settle()
        assert self.raw_store.reset(batch.id)

        assert self.engine.settle() == 1
        assert self.rollups.get_user_usage(DAY, "alice").request_count == 2

    def test_expired_periods_roll_over_before_settling(self):
        self.clock.now = datetime(2025, 5, 31, 23, 0, tzinfo=timezone.utc)
        self.aggregation.process_batch([_event("dave")])

        self.clock.now = NOW
        self.engine.settle()

        history = self.ledger.list_history("dave")
        assert [h.period for h in history] == ["2025-05"]
        assert self.ledger.get_quota("dave").period_month == 6
