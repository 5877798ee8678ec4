"""
Unit tests for the latency digest.
"""

import random

import pytest

from usage_ledger.core.digest import LatencyDigest, LatencyStats


class TestLatencyDigest:
    """Test quantile estimation and merging."""

    def test_empty_digest(self):
        digest = LatencyDigest()
        assert digest.count == 0
        assert digest.stats() == LatencyStats()
        assert digest.stats().is_empty
        with pytest.raises(ValueError):
            digest.quantile(0.5)

    def test_single_sample(self):
        digest = LatencyDigest()
        digest.add(250)
        stats = digest.stats()
        assert stats.count == 1
        assert stats.min_ms == stats.max_ms == stats.p50_ms == stats.p99_ms == 250

    def test_quantiles_close_to_exact(self):
        digest = LatencyDigest()
        digest.add_all(range(1, 10001))

        assert digest.count == 10000
        assert digest.min == 1
        assert digest.max == 10000
        assert digest.mean == pytest.approx(5000.5)
        assert digest.quantile(0.5) == pytest.approx(5000, rel=0.02)
        assert digest.quantile(0.9) == pytest.approx(9000, rel=0.02)
        assert digest.quantile(0.99) == pytest.approx(9900, rel=0.01)

    def test_quantile_out_of_range(self):
        digest = LatencyDigest()
        digest.add(1)
        with pytest.raises(ValueError):
            digest.quantile(1.5)

    def test_merge_of_disjoint_digests_stays_within_bounds(self):
        """p50 of merged disjoint sample sets falls between the true min and max."""
        rng = random.Random(42)
        low = [rng.randint(10, 200) for _ in range(500)]
        high = [rng.randint(800, 3000) for _ in range(700)]
        left, right = LatencyDigest(), LatencyDigest()
        left.add_all(low)
        right.add_all(high)

        merged = LatencyDigest.merged(left, right)

        assert merged.count == 1200
        assert merged.min == min(low)
        assert merged.max == max(high)
        assert min(low) <= merged.quantile(0.5) <= max(high)

    def test_merge_skips_empty(self):
        digest = LatencyDigest()
        digest.add_all([5, 10, 15])
        digest.merge(LatencyDigest())
        assert digest.count == 3

    def test_memory_is_bounded(self):
        digest = LatencyDigest(compression=100)
        rng = random.Random(7)
        digest.add_all(rng.expovariate(1 / 300) for _ in range(50000))
        assert digest.centroid_count <= 110
        assert len(digest.to_bytes()) < 2048

    def test_serialization_round_trip(self):
        digest = LatencyDigest()
        digest.add_all([120, 80, 450, 300, 95, 2000])
        restored = LatencyDigest.from_bytes(digest.to_bytes())

        assert restored.count == digest.count
        assert restored.min == digest.min
        assert restored.max == digest.max
        assert restored.quantile(0.5) == pytest.approx(digest.quantile(0.5))

    def test_restored_digest_keeps_accumulating(self):
        digest = LatencyDigest()
        digest.add_all([100, 200])
        restored = LatencyDigest.from_bytes(digest.to_bytes())
        restored.add(50)
        assert restored.count == 3
        assert restored.min == 50

    def test_from_bytes_of_nothing_is_empty(self):
        assert LatencyDigest.from_bytes(None).count == 0
        assert LatencyDigest.from_bytes(b"").count == 0

    def test_from_bytes_rejects_garbage(self):
        with pytest.raises(ValueError):
            LatencyDigest.from_bytes(b"not a digest at all, definitely not" * 2)
