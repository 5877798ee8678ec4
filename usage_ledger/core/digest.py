"""
Streaming latency percentiles.

A merging t-digest: raw samples are buffered, then periodically folded into
a bounded set of weighted centroids whose sizes follow the arcsine scale
function, which keeps the tails (p99) precise while the middle is coarse.
Digests merge losslessly with respect to their centroids and serialize to a
compact byte blob so they can be stored on a rollup row and reloaded on
the next settlement.
"""

import math
import struct
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

DEFAULT_COMPRESSION = 100.0

_MAGIC = b"LTDG"
_VERSION = 1
_HEADER = struct.Struct(">4sBdddddI")
_CENTROID = struct.Struct(">dd")


@dataclass(frozen=True)
class LatencyStats:
    """Latency snapshot derived from a digest (milliseconds)."""
    count: int = 0
    min_ms: float = 0.0
    max_ms: float = 0.0
    avg_ms: float = 0.0
    p50_ms: float = 0.0
    p90_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0

    @property
    def is_empty(self) -> bool:
        return self.count == 0


class LatencyDigest:
    """Mergeable, serializable approximate-quantile estimator.

    Memory is bounded by roughly ``compression / 2`` centroids plus a
    small insertion buffer, independent of how many samples were added.
    With the default compression of 100 a serialized digest is around 1KB.
    """

    def __init__(self, compression: float = DEFAULT_COMPRESSION):
        if compression <= 0:
            raise ValueError("compression must be > 0")
        self.compression = float(compression)
        self._means: List[float] = []
        self._weights: List[float] = []
        self._buffer: List[Tuple[float, float]] = []
        self._buffer_limit = max(32, int(5 * self.compression))
        self._total_weight = 0.0
        self._sum = 0.0
        self._min = math.inf
        self._max = -math.inf

    # --- ingestion -----------------------------------------------------

    def add(self, value: float, weight: float = 1.0) -> None:
        """Add one sample (or a pre-weighted point)."""
        if weight <= 0:
            raise ValueError("weight must be > 0")
        value = float(value)
        if math.isnan(value):
            raise ValueError("cannot add NaN to a digest")
        self._buffer.append((value, float(weight)))
        self._total_weight += weight
        self._sum += value * weight
        self._min = min(self._min, value)
        self._max = max(self._max, value)
        if len(self._buffer) >= self._buffer_limit:
            self._compress()

    def add_all(self, values: Iterable[float]) -> None:
        for value in values:
            self.add(value)

    def merge(self, other: "LatencyDigest") -> "LatencyDigest":
        """Fold another digest into this one; returns self."""
        if other.count == 0:
            return self
        other._compress()
        self._buffer.extend(zip(other._means, other._weights))
        self._total_weight += other._total_weight
        self._sum += other._sum
        self._min = min(self._min, other._min)
        self._max = max(self._max, other._max)
        self._compress()
        return self

    @classmethod
    def merged(cls, *digests: Optional["LatencyDigest"],
               compression: float = DEFAULT_COMPRESSION) -> "LatencyDigest":
        """Build a new digest from any number of digests (``None`` skipped)."""
        result = cls(compression)
        for digest in digests:
            if digest is not None:
                result.merge(digest)
        return result

    # --- queries -------------------------------------------------------

    @property
    def count(self) -> int:
        return int(round(self._total_weight))

    @property
    def min(self) -> float:
        return self._min if self._total_weight else 0.0

    @property
    def max(self) -> float:
        return self._max if self._total_weight else 0.0

    @property
    def mean(self) -> float:
        return self._sum / self._total_weight if self._total_weight else 0.0

    @property
    def centroid_count(self) -> int:
        self._compress()
        return len(self._means)

    def quantile(self, q: float) -> float:
        """Estimate the value at quantile ``q`` in [0, 1].

        Raises:
            ValueError: If q is out of range or the digest is empty
        """
        if q < 0 or q > 1:
            raise ValueError("quantile must be between 0 and 1")
        if self._total_weight == 0:
            raise ValueError("cannot compute a quantile of an empty digest")
        self._compress()

        means, weights = self._means, self._weights
        total = self._total_weight
        n = len(means)
        index = q * total

        if index < 1:
            return self._min
        if index > total - 1:
            return self._max

        # Left tail: interpolate between the exact min and the first centroid
        first = weights[0]
        if first > 2 and index < first / 2:
            return self._clamp(self._min + (index - 1) / (first / 2 - 1) * (means[0] - self._min))

        last = weights[-1]
        if last > 2 and total - index <= last / 2:
            return self._clamp(self._max - (total - index - 1) / (last / 2 - 1) * (self._max - means[-1]))

        weight_so_far = first / 2
        for i in range(n - 1):
            step = (weights[i] + weights[i + 1]) / 2
            if weight_so_far + step > index:
                left = index - weight_so_far
                right = weight_so_far + step - index
                return self._clamp((means[i] * right + means[i + 1] * left) / (left + right))
            weight_so_far += step
        return self._clamp(means[-1])

    def stats(self) -> LatencyStats:
        """Snapshot of count, min, max, mean and p50/p90/p95/p99."""
        if self._total_weight == 0:
            return LatencyStats()
        return LatencyStats(
            count=self.count,
            min_ms=self._min,
            max_ms=self._max,
            avg_ms=self.mean,
            p50_ms=self.quantile(0.5),
            p90_ms=self.quantile(0.9),
            p95_ms=self.quantile(0.95),
            p99_ms=self.quantile(0.99),
        )

    # --- persistence ---------------------------------------------------

    def to_bytes(self) -> bytes:
        """Serialize to the compact binary blob stored on rollup rows."""
        self._compress()
        parts = [_HEADER.pack(
            _MAGIC, _VERSION, self.compression, self._total_weight,
            self._sum, self.min, self.max, len(self._means),
        )]
        parts.extend(_CENTROID.pack(m, w) for m, w in zip(self._means, self._weights))
        return b"".join(parts)

    @classmethod
    def from_bytes(cls, data: Optional[bytes],
                   compression: float = DEFAULT_COMPRESSION) -> "LatencyDigest":
        """Deserialize a blob; ``None`` or empty input yields an empty digest.

        Raises:
            ValueError: If the blob is truncated or not a digest
        """
        if not data:
            return cls(compression)
        if len(data) < _HEADER.size:
            raise ValueError("digest blob is truncated")
        magic, version, stored_compression, total, total_sum, low, high, n = _HEADER.unpack_from(data)
        if magic != _MAGIC:
            raise ValueError("not a latency digest blob")
        if version != _VERSION:
            raise ValueError(f"unsupported digest version: {version}")
        if len(data) != _HEADER.size + n * _CENTROID.size:
            raise ValueError("digest blob length does not match centroid count")

        digest = cls(stored_compression)
        offset = _HEADER.size
        for _ in range(n):
            mean, weight = _CENTROID.unpack_from(data, offset)
            digest._means.append(mean)
            digest._weights.append(weight)
            offset += _CENTROID.size
        digest._total_weight = total
        digest._sum = total_sum
        if total:
            digest._min = low
            digest._max = high
        return digest

    # --- internals -----------------------------------------------------

    def _clamp(self, value: float) -> float:
        return min(max(value, self._min), self._max)

    def _k(self, q: float) -> float:
        q = min(max(q, 0.0), 1.0)
        return self.compression / (2 * math.pi) * math.asin(2 * q - 1)

    def _q_limit(self, q: float) -> float:
        # Largest cumulative quantile a centroid starting at q may reach
        k = self._k(q) + 1
        angle = k * 2 * math.pi / self.compression
        if angle >= math.pi / 2:
            return 1.0
        return (math.sin(angle) + 1) / 2

    def _compress(self) -> None:
        if not self._buffer:
            return
        points = sorted(list(zip(self._means, self._weights)) + self._buffer)
        self._buffer = []
        total = self._total_weight

        means: List[float] = []
        weights: List[float] = []
        cur_mean, cur_weight = points[0]
        weight_so_far = 0.0
        limit = self._q_limit(0.0)

        for mean, weight in points[1:]:
            proposed = cur_weight + weight
            if (weight_so_far + proposed) / total <= limit:
                cur_mean += (mean - cur_mean) * weight / proposed
                cur_weight = proposed
            else:
                means.append(cur_mean)
                weights.append(cur_weight)
                weight_so_far += cur_weight
                limit = self._q_limit(weight_so_far / total)
                cur_mean, cur_weight = mean, weight

        means.append(cur_mean)
        weights.append(cur_weight)
        self._means = means
        self._weights = weights
