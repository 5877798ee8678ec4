"""
Data models for storage layer.

Defines the inbound usage event, the raw batch write-ahead record, and the
rollup, quota and audit records read back from the store.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from usage_ledger.core.digest import LatencyStats
from usage_ledger.core.pricing import CostBreakdown
from usage_ledger.core.token_counter import TokenUsage

MICROS_PER_USD = 1_000_000
ZERO = Decimal("0")

_TOKEN_FIELDS = ("input_tokens", "output_tokens", "cache_creation_tokens", "cache_read_tokens")
_OPTIONAL_TEXT_FIELDS = ("stop_reason", "error_type", "event_id", "trace_id",
                         "message_id", "request_id", "key_alias")


def to_micros(amount) -> int:
    """Convert a USD amount to integer micro-dollars (half-up)."""
    if not isinstance(amount, Decimal):
        amount = Decimal(str(amount))
    return int((amount * MICROS_PER_USD).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_micros(micros: Optional[int]) -> Decimal:
    """Convert integer micro-dollars back to a USD Decimal."""
    return Decimal(int(micros or 0)).scaleb(-6)


def parse_timestamp(value) -> datetime:
    """Parse an ISO-8601 string or datetime into an aware UTC datetime."""
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        moment = datetime.fromisoformat(text)
    else:
        raise ValueError(f"invalid timestamp: {value!r}")
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class EventStatus(Enum):
    """Outcome of one API call."""
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class UsageEvent:
    """Outcome of one API call as reported by the gateway.

    Immutable once created. ``input_tokens`` already excludes cache reads;
    the total input is ``input + cache_creation + cache_read``.
    """
    user_id: str
    timestamp: datetime
    model: Optional[str]
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    latency_ms: int = 0
    stream: bool = False
    stop_reason: Optional[str] = None
    status: EventStatus = EventStatus.SUCCESS
    error_type: Optional[str] = None
    event_id: Optional[str] = None
    trace_id: Optional[str] = None
    message_id: Optional[str] = None
    request_id: Optional[str] = None
    key_alias: Optional[str] = None

    def __post_init__(self):
        """Validate fields; naive timestamps are taken as UTC.

        Raises:
            ValueError: If a field is missing, negative or of the wrong type
        """
        if not isinstance(self.user_id, str) or not self.user_id.strip():
            raise ValueError("user_id is required and cannot be empty")
        if not isinstance(self.timestamp, datetime):
            raise ValueError(f"timestamp must be a datetime, got {self.timestamp!r}")
        if self.timestamp.tzinfo is None:
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=timezone.utc))
        if self.model is not None and (not isinstance(self.model, str) or not self.model.strip()):
            raise ValueError("model must be a non-empty string or null")
        for name in _TOKEN_FIELDS + ("latency_ms",):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer")
            if value < 0:
                raise ValueError(f"{name} cannot be negative")
        if not isinstance(self.status, EventStatus):
            raise ValueError(f"status must be an EventStatus, got {self.status!r}")

    @property
    def date(self) -> date:
        """UTC calendar date the event belongs to."""
        return self.timestamp.astimezone(timezone.utc).date()

    @property
    def hour(self) -> int:
        """UTC hour of day (0-23)."""
        return self.timestamp.astimezone(timezone.utc).hour

    @property
    def is_success(self) -> bool:
        return self.status is EventStatus.SUCCESS

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens,
        )

    @property
    def total_input_tokens(self) -> int:
        return self.usage.total_input_tokens

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the gateway's snake_case field names."""
        data = {
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "model": self.model,
            "latency_ms": self.latency_ms,
            "stream": self.stream,
            "status": self.status.value,
        }
        for name in _TOKEN_FIELDS:
            data[name] = getattr(self, name)
        for name in _OPTIONAL_TEXT_FIELDS:
            data[name] = getattr(self, name)
        return data

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "UsageEvent":
        """Decode one gateway payload.

        Unknown keys are ignored so the gateway can add fields freely.

        Raises:
            ValueError: If a required field is missing or has the wrong type
        """
        if not isinstance(payload, Mapping):
            raise ValueError("usage event payload must be an object")

        user_id = payload.get("user_id")
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")

        if "timestamp" not in payload:
            raise ValueError("timestamp is required")
        try:
            timestamp = parse_timestamp(payload["timestamp"])
        except (TypeError, ValueError) as e:
            raise ValueError(f"invalid timestamp: {payload['timestamp']!r}") from e

        model = payload.get("model")
        if model is not None and (not isinstance(model, str) or not model.strip()):
            raise ValueError("model must be a non-empty string or null")

        tokens = {}
        for name in _TOKEN_FIELDS:
            tokens[name] = _non_negative_int(payload.get(name, 0), name)
        latency_ms = _non_negative_int(payload.get("latency_ms", 0), "latency_ms")

        raw_status = payload.get("status", EventStatus.SUCCESS.value)
        try:
            status = EventStatus(str(raw_status).lower())
        except ValueError:
            raise ValueError(f"status must be 'success' or 'error', got {raw_status!r}")

        stream = payload.get("stream", False)
        if not isinstance(stream, bool):
            raise ValueError("stream must be a boolean")

        optional = {}
        for name in _OPTIONAL_TEXT_FIELDS:
            value = payload.get(name)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"{name} must be a string")
            optional[name] = value

        return cls(
            user_id=user_id,
            timestamp=timestamp,
            model=model,
            latency_ms=latency_ms,
            stream=stream,
            status=status,
            **tokens,
            **optional,
        )


def _non_negative_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number")
    if value < 0:
        raise ValueError(f"{name} cannot be negative")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{name} must be a whole number")
    return int(value)


class BatchStatus(Enum):
    """Settlement state of a raw batch."""
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"


@dataclass(frozen=True)
class RawBatch:
    """Flushed events persisted as one write-ahead record.

    Created once by a buffer flush and mutated only by settlement status
    transitions.
    """
    id: str
    events: Tuple[UsageEvent, ...]
    created_at: datetime
    status: BatchStatus = BatchStatus.PENDING
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @property
    def event_count(self) -> int:
        return len(self.events)

    @property
    def processed(self) -> bool:
        return self.status is BatchStatus.PROCESSED

    @classmethod
    def create(cls, events: Sequence[UsageEvent], now: Optional[datetime] = None) -> "RawBatch":
        """Package buffered events into a new pending batch.

        Raises:
            ValueError: If events is empty
        """
        if not events:
            raise ValueError("Events list cannot be empty")
        now = now or datetime.now(timezone.utc)
        return cls(
            id=cls.create_id(events[0].date, now),
            events=tuple(events),
            created_at=now,
        )

    @staticmethod
    def create_id(batch_date: date, now: datetime) -> str:
        """``YYYY-MM-DD_epochMillis_uuid8``, unique under concurrent flushes."""
        millis = int(now.timestamp() * 1000)
        return f"{batch_date.isoformat()}_{millis}_{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class ErrorEvent:
    """A non-success event read back from the raw batch log."""
    batch_id: str
    event: UsageEvent


@dataclass(frozen=True)
class ModelSummary:
    """One model's usage summed over a range of daily rows.

    ``avg_latency_ms`` is weighted by each day's latency sample count.
    """
    model: str
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    request_count: int = 0
    success_count: int = 0
    unique_users: int = 0
    estimated_cost_usd: Decimal = ZERO
    avg_latency_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.success_count / self.request_count if self.request_count else 0.0


@dataclass(frozen=True)
class CacheEfficiency:
    """Prompt-cache effectiveness over a rollup row."""
    hit_rate: float = 0.0
    cache_read_tokens: int = 0
    saved_usd: Decimal = ZERO


@dataclass(frozen=True)
class HourlyBreakdown:
    request_count: int = 0
    total_tokens: int = 0
    cost_usd: Decimal = ZERO


@dataclass(frozen=True)
class ModelBreakdown:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    cost_usd: Decimal = ZERO


@dataclass(frozen=True)
class TopItem:
    """Leaderboard entry (model or user)."""
    key: str
    request_count: int
    total_tokens: int
    cost_usd: Decimal


@dataclass(frozen=True)
class DailyUserUsage:
    """Per (date, user) rollup."""
    id: str
    date: date
    user_id: str
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_creation_tokens: int = 0
    total_cache_read_tokens: int = 0
    total_tokens: int = 0
    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    estimated_cost_usd: Decimal = ZERO
    error_breakdown: Dict[str, int] = field(default_factory=dict)
    latency_stats: LatencyStats = LatencyStats()
    latency_digest: Optional[bytes] = None
    cache_efficiency: CacheEfficiency = CacheEfficiency()
    peak_hour: int = 0
    peak_hour_requests: int = 0
    hourly_breakdown: Dict[int, HourlyBreakdown] = field(default_factory=dict)
    model_breakdown: Dict[str, ModelBreakdown] = field(default_factory=dict)
    cost_breakdown: CostBreakdown = CostBreakdown()
    last_updated_at: Optional[datetime] = None

    @staticmethod
    def create_id(usage_date: date, user_id: str) -> str:
        return f"{usage_date.isoformat()}_{user_id}"


@dataclass(frozen=True)
class DailyModelUsage:
    """Per (date, model) rollup."""
    id: str
    date: date
    model: str
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_creation_tokens: int = 0
    total_cache_read_tokens: int = 0
    total_tokens: int = 0
    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    unique_users: int = 0
    user_requests: Dict[str, int] = field(default_factory=dict)
    estimated_cost_usd: Decimal = ZERO
    error_breakdown: Dict[str, int] = field(default_factory=dict)
    latency_stats: LatencyStats = LatencyStats()
    latency_digest: Optional[bytes] = None
    cache_efficiency: CacheEfficiency = CacheEfficiency()
    peak_hour: int = 0
    peak_hour_requests: int = 0
    hourly_request_count: Dict[int, int] = field(default_factory=dict)
    cost_breakdown: CostBreakdown = CostBreakdown()
    last_updated_at: Optional[datetime] = None

    @staticmethod
    def create_id(usage_date: date, model: str) -> str:
        return f"{usage_date.isoformat()}_{model}"


@dataclass(frozen=True)
class SystemDailyStats:
    """System-wide rollup for one date."""
    id: str
    date: date
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    total_request_count: int = 0
    unique_users: int = 0
    total_estimated_cost_usd: Decimal = ZERO
    success_count: int = 0
    error_count: int = 0
    success_rate: float = 0.0
    latency_stats: LatencyStats = LatencyStats()
    latency_digest: Optional[bytes] = None
    total_cache_read_tokens: int = 0
    system_cache_hit_rate: float = 0.0
    system_cache_saved_usd: Decimal = ZERO
    peak_hour: int = 0
    peak_hour_requests: int = 0
    hourly_request_count: Dict[int, int] = field(default_factory=dict)
    top_models: List[TopItem] = field(default_factory=list)
    top_users: List[TopItem] = field(default_factory=list)
    last_updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class UserQuota:
    """Per-user lifetime totals, current monthly period and quota state.

    ``total_*`` counters hold the closed periods; the open period lives in
    the ``period_*`` counters until rollover folds it in. The ``lifetime_*``
    properties give the never-reset view.
    """
    user_id: str
    period_year: int
    period_month: int
    period_start_at: datetime
    period_end_at: datetime
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    total_request_count: int = 0
    total_estimated_cost_usd: Decimal = ZERO
    quota_enabled: bool = False
    cost_limit_usd: Decimal = ZERO
    period_input_tokens: int = 0
    period_output_tokens: int = 0
    period_tokens: int = 0
    period_request_count: int = 0
    period_cost_usd: Decimal = ZERO
    bonus_cost_usd: Decimal = ZERO
    bonus_reason: Optional[str] = None
    bonus_granted_at: Optional[datetime] = None
    cost_usage_percent: float = 0.0
    quota_exceeded: bool = False
    first_seen_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None

    @property
    def effective_cost_limit(self) -> Decimal:
        return self.cost_limit_usd + self.bonus_cost_usd

    @property
    def lifetime_cost_usd(self) -> Decimal:
        return self.total_estimated_cost_usd + self.period_cost_usd

    @property
    def lifetime_tokens(self) -> int:
        return self.total_tokens + self.period_tokens

    @property
    def lifetime_request_count(self) -> int:
        return self.total_request_count + self.period_request_count

    @property
    def remaining_cost_usd(self) -> Optional[Decimal]:
        """Remaining allowance, or None when no limit applies."""
        if not self.quota_enabled or self.effective_cost_limit <= 0:
            return None
        return max(ZERO, self.effective_cost_limit - self.period_cost_usd)

    @staticmethod
    def compute_status(period_cost: Decimal, cost_limit: Decimal,
                       bonus: Decimal) -> Tuple[float, bool]:
        """Usage percent against ``cost_limit + bonus`` and the exceeded flag."""
        effective = cost_limit + bonus
        if effective <= 0:
            return 0.0, False
        percent = float(period_cost / effective * 100)
        return percent, percent >= 100


@dataclass(frozen=True)
class QuotaHistory:
    """Immutable archive of one closed monthly period."""
    user_id: str
    period_year: int
    period_month: int
    total_input_tokens: int
    total_output_tokens: int
    total_tokens: int
    total_cost_usd: Decimal
    total_request_count: int
    cost_limit_usd: Decimal
    bonus_cost_usd: Decimal
    effective_limit_usd: Decimal
    final_usage_percent: float
    was_exceeded: bool
    model_tokens: Dict[str, int] = field(default_factory=dict)
    model_costs: Dict[str, Decimal] = field(default_factory=dict)
    archived_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def period(self) -> str:
        return f"{self.period_year}-{self.period_month:02d}"


@dataclass(frozen=True)
class BonusRecord:
    """Append-only audit record of one admin bonus grant."""
    id: str
    user_id: str
    period_year: int
    period_month: int
    amount_usd: Decimal
    reason: Optional[str]
    granted_by: str
    created_at: datetime

    @classmethod
    def create(cls, user_id: str, period_year: int, period_month: int,
               amount_usd: Decimal, reason: Optional[str], granted_by: str,
               now: Optional[datetime] = None) -> "BonusRecord":
        return cls(
            id=uuid.uuid4().hex,
            user_id=user_id,
            period_year=period_year,
            period_month=period_month,
            amount_usd=amount_usd,
            reason=reason,
            granted_by=granted_by,
            created_at=now or datetime.now(timezone.utc),
        )
