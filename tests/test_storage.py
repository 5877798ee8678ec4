"""
Unit tests for storage layer.

Tests schema creation, the raw batch store and its claim protocol, and the
JSON map increments used by the rollups.
"""

import json
import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from usage_ledger.storage.db import get_connection, write_transaction
from usage_ledger.storage.models import BatchStatus, EventStatus, RawBatch, UsageEvent
from usage_ledger.storage.repository import RawEventRepository, initialize_schema
from usage_ledger.storage.rollups import map_increment_sql, normalize_error_type, sanitize_key

T0 = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


def _event(user_id="alice", **overrides):
    fields = dict(user_id=user_id, timestamp=T0, model="claude-sonnet-4-20250514",
                  input_tokens=100, output_tokens=50, latency_ms=300)
    fields.update(overrides)
    return UsageEvent(**fields)


def _corrupt(db_path, batch_id, events_text):
    """Overwrite a stored batch's events column with arbitrary text."""
    conn = get_connection(db_path)
    try:
        conn.execute("UPDATE raw_event_batch SET events = ? WHERE id = ?", (events_text, batch_id))
    finally:
        conn.close()


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify every table is created, and that creation is repeatable."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
                tables = {row[0] for row in rows}
            finally:
                conn.close()
            assert {
                "raw_event_batch", "daily_user_usage", "daily_model_usage",
                "system_daily_stats", "user_quota", "quota_history", "bonus_record",
            } <= tables


class TestRawEventRepository:
    """Test the raw batch write-ahead log."""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "test.db")
        initialize_schema(self.db_path)
        self.repo = RawEventRepository(self.db_path)

    def teardown_method(self):
        self.temp_dir.cleanup()

    def test_insert_and_get(self):
        batch = RawBatch.create([_event(), _event("bob", model=None, status=EventStatus.ERROR)], now=T0)
        self.repo.insert(batch)

        stored = self.repo.get(batch.id)
        assert stored.id == batch.id
        assert stored.event_count == 2
        assert stored.status is BatchStatus.PENDING
        assert not stored.processed
        assert stored.events[1].user_id == "bob"
        assert stored.events[1].model is None

    def test_batch_id_format(self):
        batch = RawBatch.create([_event()], now=T0)
        day, millis, suffix = batch.id.split("_")
        assert day == "2025-06-15"
        assert int(millis) == int(T0.timestamp() * 1000)
        assert len(suffix) == 8

    def test_create_rejects_empty(self):
        with pytest.raises(ValueError, match="cannot be empty"):
            RawBatch.create([])

    def test_find_pending_oldest_first(self):
        later = RawBatch.create([_event()], now=T0 + timedelta(minutes=5))
        earlier = RawBatch.create([_event()], now=T0)
        self.repo.insert(later)
        self.repo.insert(earlier)

        assert [b.id for b in self.repo.find_pending()] == [earlier.id, later.id]
        assert [b.id for b in self.repo.find_pending(limit=1)] == [earlier.id]

    def test_claim_is_exclusive(self):
        batch = RawBatch.create([_event()], now=T0)
        self.repo.insert(batch)

        assert self.repo.claim(batch.id) is True
        assert self.repo.claim(batch.id) is False
        assert self.repo.get(batch.id).status is BatchStatus.PROCESSING
        assert self.repo.find_pending() == []

    def test_mark_processed_requires_claim(self):
        batch = RawBatch.create([_event()], now=T0)
        self.repo.insert(batch)

        assert self.repo.mark_processed(batch.id) is False
        self.repo.claim(batch.id)
        assert self.repo.mark_processed(batch.id) is True
        assert self.repo.get(batch.id).processed

    def test_mark_processed_rolls_back_with_transaction(self):
        batch = RawBatch.create([_event()], now=T0)
        self.repo.insert(batch)
        self.repo.claim(batch.id)

        with pytest.raises(RuntimeError):
            with write_transaction(self.db_path) as conn:
                self.repo.mark_processed(batch.id, conn=conn)
                raise RuntimeError("boom")

        assert self.repo.get(batch.id).status is BatchStatus.PROCESSING

    def test_release_and_reset(self):
        batch = RawBatch.create([_event()], now=T0)
        self.repo.insert(batch)
        self.repo.claim(batch.id)

        assert self.repo.release(batch.id) is True
        assert self.repo.get(batch.id).status is BatchStatus.PENDING

        self.repo.claim(batch.id)
        self.repo.mark_processed(batch.id)
        assert self.repo.reset(batch.id) is True
        stored = self.repo.get(batch.id)
        assert stored.status is BatchStatus.PENDING
        assert stored.processed_at is None

    def test_release_stale_claims(self):
        stale = RawBatch.create([_event()], now=T0)
        fresh = RawBatch.create([_event()], now=T0)
        self.repo.insert(stale)
        self.repo.insert(fresh)
        self.repo.claim(stale.id, now=T0)
        self.repo.claim(fresh.id, now=T0 + timedelta(hours=3))

        released = self.repo.release_stale_claims(T0 + timedelta(hours=2))

        assert released == 1
        assert self.repo.get(stale.id).status is BatchStatus.PENDING
        assert self.repo.get(fresh.id).status is BatchStatus.PROCESSING

    def test_count_by_status(self):
        batch = RawBatch.create([_event()], now=T0)
        self.repo.insert(batch)
        assert self.repo.count_by_status() == {"pending": 1, "processing": 0, "processed": 0}

    def test_list_pending_does_not_decode_events(self):
        batch = RawBatch.create([_event(), _event("bob")], now=T0)
        self.repo.insert(batch)
        _corrupt(self.db_path, batch.id, "not json")

        assert self.repo.list_pending() == [(batch.id, 2)]

    def test_find_recent_errors_newest_event_first(self):
        older = RawBatch.create([
            _event("alice", status=EventStatus.ERROR, error_type="rate_limit_error",
                   timestamp=T0 - timedelta(hours=2)),
            _event("bob"),
        ], now=T0 - timedelta(hours=1))
        newer = RawBatch.create([
            _event("carol", status=EventStatus.ERROR, request_id="req-9",
                   timestamp=T0 - timedelta(minutes=1)),
        ], now=T0)
        self.repo.insert(older)
        self.repo.insert(newer)

        errors = self.repo.find_recent_errors(limit=5)

        assert [e.event.user_id for e in errors] == ["carol", "alice"]
        assert errors[0].batch_id == newer.id
        assert errors[0].event.request_id == "req-9"
        assert errors[1].event.error_type == "rate_limit_error"
        assert [e.event.user_id for e in self.repo.find_recent_errors(limit=1)] == ["carol"]

    def test_find_recent_errors_skips_undecodable_batches(self):
        good = RawBatch.create([_event("alice", status=EventStatus.ERROR)], now=T0)
        broken = RawBatch.create([_event("bob", status=EventStatus.ERROR)], now=T0 + timedelta(minutes=1))
        invalid = RawBatch.create([_event("carol", status=EventStatus.ERROR),
                                   _event("dave", status=EventStatus.ERROR)],
                                  now=T0 + timedelta(minutes=2))
        for batch in (good, broken, invalid):
            self.repo.insert(batch)
        _corrupt(self.db_path, broken.id, "[{")
        events = [item.to_dict() for item in invalid.events]
        events[0]["input_tokens"] = -1
        _corrupt(self.db_path, invalid.id, json.dumps(events))

        errors = self.repo.find_recent_errors()

        assert sorted(e.event.user_id for e in errors) == ["alice", "dave"]

    def test_find_recent_errors_only_scans_newest_batches(self):
        old = RawBatch.create([_event("alice", status=EventStatus.ERROR)], now=T0)
        self.repo.insert(old)
        for minute in range(1, 4):
            self.repo.insert(RawBatch.create([_event("bob")], now=T0 + timedelta(minutes=minute)))

        assert self.repo.find_recent_errors(scan=3) == []
        assert len(self.repo.find_recent_errors(scan=4)) == 1


class TestUsageEventValidation:
    """Events are checked when constructed, not only when decoded."""

    @pytest.mark.parametrize("overrides,message", [
        ({"user_id": ""}, "user_id"),
        ({"user_id": None}, "user_id"),
        ({"timestamp": "2025-06-15T12:00:00Z"}, "timestamp"),
        ({"model": ""}, "model"),
        ({"input_tokens": -1}, "input_tokens cannot be negative"),
        ({"cache_read_tokens": 2.5}, "cache_read_tokens must be an integer"),
        ({"output_tokens": True}, "output_tokens must be an integer"),
        ({"latency_ms": -5}, "latency_ms cannot be negative"),
        ({"status": "error"}, "status"),
    ])
    def test_invalid_fields_are_rejected(self, overrides, message):
        with pytest.raises(ValueError, match=message):
            _event(**overrides)

    def test_naive_timestamp_is_utc(self):
        event = _event(timestamp=datetime(2025, 6, 15, 23, 30))
        assert event.timestamp.tzinfo is not None
        assert event.date.isoformat() == "2025-06-15"
        assert event.hour == 23


class TestMapIncrements:
    """Test nested JSON map increments on dynamic keys."""

    def setup_method(self):
        self.conn = get_connection(":memory:")
        self.conn.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, doc TEXT NOT NULL DEFAULT '{}')")
        self.conn.execute("INSERT INTO t (id) VALUES (1)")

    def teardown_method(self):
        self.conn.close()

    def _apply(self, increments):
        expr, params = map_increment_sql("doc", increments)
        self.conn.execute(f"UPDATE t SET doc = {expr} WHERE id = 1", params)
        return json.loads(self.conn.execute("SELECT doc FROM t WHERE id = 1").fetchone()[0])

    def test_flat_counters_accumulate(self):
        self._apply({"rate_limit": 2})
        doc = self._apply({"rate_limit": 1, "overloaded": 4})
        assert doc == {"rate_limit": 3, "overloaded": 4}

    def test_nested_fields_accumulate(self):
        self._apply({"13": {"request_count": 1, "cost_micros": 500}})
        doc = self._apply({"13": {"request_count": 2, "total_tokens": 10}, "14": {"request_count": 1}})
        assert doc["13"] == {"request_count": 3, "cost_micros": 500, "total_tokens": 10}
        assert doc["14"] == {"request_count": 1}

    def test_new_key_gets_every_field(self):
        """A key absent from the document receives all of its fields in one update."""
        doc = self._apply({"claude-haiku": {"input_tokens": 5, "output_tokens": 7, "request_count": 1}})
        assert doc == {"claude-haiku": {"input_tokens": 5, "output_tokens": 7, "request_count": 1}}

        doc = self._apply({"claude-haiku": {"input_tokens": 1},
                           "claude-opus": {"cost_micros": 9, "request_count": 2}})
        assert doc["claude-haiku"] == {"input_tokens": 6, "output_tokens": 7, "request_count": 1}
        assert doc["claude-opus"] == {"cost_micros": 9, "request_count": 2}

    def test_many_keys_in_one_update(self):
        increments = {str(hour): {"request_count": 1, "total_tokens": hour, "cost_micros": 1}
                      for hour in range(24)}
        doc = self._apply(increments)
        assert len(doc) == 24
        assert doc["23"]["total_tokens"] == 23

    def test_keys_are_sanitized(self):
        doc = self._apply({"claude-3.5": {"request_count": 1}, 'we"ird$key': 1})
        assert doc == {"claude-3_5": {"request_count": 1}, "we_ird_key": 1}

    def test_colliding_keys_are_summed(self):
        doc = self._apply({"a.b": 1, "a$b": 2})
        assert doc == {"a_b": 3}


class TestHelpers:
    def test_sanitize_key(self):
        assert sanitize_key("model.v1") == "model_v1"
        assert sanitize_key("back\\slash") == "back_slash"
        assert sanitize_key(7) == "7"

    @pytest.mark.parametrize("raw,expected", [
        ("rate_limit_error", "rate_limit"),
        ("rate_limited", "rate_limit"),
        ("overloaded_error", "overloaded"),
        ("invalid_request_error", "invalid_request"),
        ("authentication_error", "authentication"),
        ("context_length_exceeded", "context_length"),
        ("internal_error", "server_error"),
        ("server_error", "server_error"),
        ("teapot", "unknown"),
        (None, "unknown"),
        ("", "unknown"),
    ])
    def test_normalize_error_type(self, raw, expected):
        assert normalize_error_type(raw) == expected
