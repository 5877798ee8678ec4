"""
Unit tests for the aggregation engine.

Tests the four rollup dimensions and their derived fields.
"""

import os
import tempfile
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from usage_ledger.core.aggregation import AggregationEngine, QuotaDefaults
from usage_ledger.core.pricing import UnknownModelPricingError
from usage_ledger.storage.models import EventStatus, UsageEvent
from usage_ledger.storage.quotas import QuotaRepository
from usage_ledger.storage.repository import initialize_schema
from usage_ledger.storage.rollups import RollupRepository

SONNET = "claude-sonnet-4-20250514"
HAIKU = "claude-3-5-haiku-20241022"
DAY = date(2025, 6, 15)
NOW = datetime(2025, 6, 15, 23, 0, tzinfo=timezone.utc)


def _event(user_id="alice", hour=12, model=SONNET, **overrides):
    fields = dict(
        user_id=user_id,
        timestamp=datetime(2025, 6, 15, hour, 5, tzinfo=timezone.utc),
        model=model,
        input_tokens=1000,
        output_tokens=500,
        cache_creation_tokens=100,
        cache_read_tokens=500,
        latency_ms=400,
    )
    fields.update(overrides)
    return UsageEvent(**fields)


def _error(user_id="alice", hour=12, error_type="rate_limit_error"):
    return _event(user_id, hour, model=None, input_tokens=0, output_tokens=0,
                  cache_creation_tokens=0, cache_read_tokens=0, latency_ms=50,
                  status=EventStatus.ERROR, error_type=error_type)


class TestAggregationEngine:
    """Test per-batch rollup updates."""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "test.db")
        initialize_schema(self.db_path)
        self.engine = AggregationEngine(self.db_path, clock=lambda: NOW)
        self.rollups = RollupRepository(self.db_path)

    def teardown_method(self):
        self.temp_dir.cleanup()

    def test_daily_user_usage_counters(self):
        self.engine.process_batch([_event(), _error()])

        row = self.rollups.get_user_usage(DAY, "alice")
        assert row.id == "2025-06-15_alice"
        assert row.request_count == 2
        assert row.success_count == 1
        assert row.error_count == 1
        assert row.total_input_tokens == 1600
        assert row.total_output_tokens == 500
        assert row.total_cache_creation_tokens == 100
        assert row.total_cache_read_tokens == 500
        assert row.total_tokens == 2100
        assert row.estimated_cost_usd == Decimal("0.011025")
        assert row.cost_breakdown.input_cost == Decimal("0.003")
        assert row.cost_breakdown.cache_write_cost == Decimal("0.000375")
        assert row.error_breakdown == {"rate_limit": 1}

    def test_breakdown_maps(self):
        self.engine.process_batch([_event(hour=9), _event(hour=9, model=HAIKU), _error(hour=14)])

        row = self.rollups.get_user_usage(DAY, "alice")
        assert set(row.model_breakdown) == {SONNET, HAIKU, "unknown"}
        assert row.model_breakdown[SONNET].request_count == 1
        assert row.model_breakdown["unknown"].error_count == 1
        assert row.model_breakdown["unknown"].cost_usd == Decimal("0")
        assert row.hourly_breakdown[9].request_count == 2
        assert row.hourly_breakdown[14].request_count == 1
        assert row.peak_hour == 9
        assert row.peak_hour_requests == 2

    def test_counters_are_additive_across_batches(self):
        self.engine.process_batch([_event(), _event()])
        self.engine.process_batch([_event(hour=15)])

        row = self.rollups.get_user_usage(DAY, "alice")
        assert row.request_count == 3
        assert row.estimated_cost_usd == Decimal("0.033075")
        assert row.hourly_breakdown[12].request_count == 2
        assert row.hourly_breakdown[15].request_count == 1

    def test_latency_digest_accumulates(self):
        self.engine.process_batch([_event(latency_ms=100), _event(latency_ms=300)])
        self.engine.process_batch([_event(latency_ms=900)])

        stats = self.rollups.get_user_usage(DAY, "alice").latency_stats
        assert stats.count == 3
        assert stats.min_ms == 100
        assert stats.max_ms == 900
        assert 100 <= stats.p50_ms <= 900

    def test_cache_efficiency(self):
        self.engine.process_batch([_event()])

        efficiency = self.rollups.get_user_usage(DAY, "alice").cache_efficiency
        assert efficiency.cache_read_tokens == 500
        assert efficiency.hit_rate == pytest.approx(500 / 1600)
        # 500 tokens at $3.00/M vs $0.30/M
        assert efficiency.saved_usd == Decimal("0.00135")

    def test_model_unique_users_is_a_daily_distinct_count(self):
        self.engine.process_batch([_event("alice"), _event("bob")])
        self.engine.process_batch([_event("carol"), _event("alice")])

        row = self.rollups.get_model_usage(DAY, SONNET)
        assert row.request_count == 4
        assert row.unique_users == 3
        assert row.user_requests == {"alice": 2, "bob": 1, "carol": 1}

    def test_null_model_grouped_as_unknown(self):
        self.engine.process_batch([_error(error_type="overloaded_error")])

        row = self.rollups.get_model_usage(DAY, "unknown")
        assert row.error_count == 1
        assert row.error_breakdown == {"overloaded": 1}

    def test_system_stats(self):
        events = [_event("alice") for _ in range(3)] + [_event("bob", model=HAIKU), _error("carol")]
        self.engine.process_batch(events)

        stats = self.rollups.get_system_stats(DAY)
        assert stats.id == "2025-06-15"
        assert stats.total_request_count == 5
        assert stats.success_rate == pytest.approx(0.8)
        assert stats.unique_users == 3
        assert stats.latency_stats.count == 5
        assert [item.key for item in stats.top_models] == [SONNET, HAIKU, "unknown"]
        assert stats.top_users[0].key == "alice"
        assert stats.top_users[0].total_tokens == 3 * 2100

    def test_top_users_limited_to_ten(self):
        self.engine.process_batch([_event(f"user{i:02d}", output_tokens=i) for i in range(12)])

        top_users = self.rollups.get_system_stats(DAY).top_users
        assert len(top_users) == 10
        assert top_users[0].key == "user11"

    def test_quota_usage(self):
        self.engine.process_batch([_event(), _event()])

        quota = QuotaRepository(self.db_path).get("alice")
        assert quota.period_year == 2025
        assert quota.period_month == 6
        assert quota.period_request_count == 2
        assert quota.period_cost_usd == Decimal("0.02205")
        assert quota.lifetime_cost_usd == Decimal("0.02205")
        assert quota.first_seen_at == NOW

    def test_quota_defaults_apply_to_new_users(self):
        engine = AggregationEngine(self.db_path, clock=lambda: NOW,
                                   quota_defaults=QuotaDefaults(True, Decimal("0.01")))
        engine.process_batch([_event()])

        quota = QuotaRepository(self.db_path).get("alice")
        assert quota.quota_enabled
        assert quota.cost_usage_percent == pytest.approx(110.25)
        assert quota.quota_exceeded

    def test_unknown_model_aborts_whole_batch(self):
        with pytest.raises(UnknownModelPricingError):
            self.engine.process_batch([_event(), _event(model="gpt-4o")])

        assert self.rollups.get_user_usage(DAY, "alice") is None
        assert self.rollups.get_system_stats(DAY) is None
        assert QuotaRepository(self.db_path).get("alice") is None

    def test_empty_batch_is_noop(self):
        self.engine.process_batch([])
        assert self.rollups.get_system_stats(DAY) is None


def _on(day, user_id="alice", **overrides):
    return _event(user_id, timestamp=datetime(2025, 6, day, 12, 5, tzinfo=timezone.utc), **overrides)


class TestRollupQueries:
    """Test range reads over the daily rows."""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "test.db")
        initialize_schema(self.db_path)
        self.engine = AggregationEngine(self.db_path, clock=lambda: NOW)
        self.rollups = RollupRepository(self.db_path)
        self.engine.process_batch([
            _on(14), _on(14, "dave"),
            _on(15), _on(15, "bob", latency_ms=800),
            _on(16, "carol", model=HAIKU),
        ])

    def teardown_method(self):
        self.temp_dir.cleanup()

    def test_system_stats_range(self):
        rows = self.rollups.list_system_stats(date(2025, 6, 14), date(2025, 6, 15))

        assert [row.date for row in rows] == [date(2025, 6, 14), date(2025, 6, 15)]
        assert [row.total_request_count for row in rows] == [2, 2]
        assert self.rollups.list_system_stats(date(2025, 6, 20), date(2025, 6, 30)) == []

    def test_model_summary(self):
        summaries = self.rollups.summarize_models(date(2025, 6, 14), date(2025, 6, 16))

        assert [s.model for s in summaries] == [SONNET, HAIKU]
        sonnet = summaries[0]
        assert sonnet.request_count == 4
        assert sonnet.success_count == 4
        assert sonnet.success_rate == 1.0
        assert sonnet.total_tokens == 4 * 2100
        # alice, bob and dave, though no single day saw more than two
        assert sonnet.unique_users == 3
        assert sonnet.estimated_cost_usd == Decimal("0.011025") * 4
        assert sonnet.avg_latency_ms == pytest.approx((400 * 3 + 800) / 4)

    def test_model_summary_respects_range(self):
        summaries = self.rollups.summarize_models(date(2025, 6, 15), date(2025, 6, 15))

        assert [s.model for s in summaries] == [SONNET]
        assert summaries[0].request_count == 2
        assert self.rollups.summarize_models(date(2025, 7, 1), date(2025, 7, 7)) == []
