"""
Aggregation engine.

Turns a batch of usage events into increments on four rollup dimensions:
per (date, user), per (date, model), per user quota, and per date system
wide. Every event is priced before anything is written, so an unknown model
aborts the batch without touching the store.
"""

import sqlite3
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, Optional, Sequence, Tuple

from usage_ledger.core.digest import DEFAULT_COMPRESSION
from usage_ledger.core.logging import get_logger
from usage_ledger.core.periods import utc_now
from usage_ledger.core.pricing import CostCalculator, UnknownModelPricingError
from usage_ledger.storage import quotas, rollups
from usage_ledger.storage.db import DEFAULT_DB_PATH, write_transaction
from usage_ledger.storage.models import UsageEvent
from usage_ledger.storage.rollups import UsageDelta, model_key

logger = get_logger(__name__)


@dataclass(frozen=True)
class QuotaDefaults:
    """Settings applied to quota rows created on a user's first event."""
    enabled: bool = False
    cost_limit_usd: Decimal = Decimal("0")


@dataclass
class AggregationPlan:
    """Per-row increments for one batch, grouped by rollup dimension."""
    users: Dict[Tuple[date, str], UsageDelta] = field(default_factory=dict)
    models: Dict[Tuple[date, str], UsageDelta] = field(default_factory=dict)
    quotas: Dict[str, UsageDelta] = field(default_factory=dict)
    system: Dict[date, UsageDelta] = field(default_factory=dict)
    event_count: int = 0


class AggregationEngine:
    """Applies batches of usage events to the rollup tables.

    Each row update is an atomic increment inside one write transaction.
    Derived fields (latency percentiles, peak hour, hit rates, leaderboards)
    are recomputed from the row's cumulative state in the same transaction.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH,
                 calculator: Optional[CostCalculator] = None,
                 digest_compression: float = DEFAULT_COMPRESSION,
                 quota_defaults: QuotaDefaults = QuotaDefaults(),
                 clock: Callable[[], datetime] = utc_now):
        self.db_path = db_path
        self.calculator = calculator or CostCalculator()
        self.digest_compression = digest_compression
        self.quota_defaults = quota_defaults
        self.clock = clock

    def plan(self, events: Sequence[UsageEvent]) -> AggregationPlan:
        """Price every event and group the increments by target row.

        Raises:
            UnknownModelPricingError: If any event names a model without pricing
        """
        plan = AggregationPlan(event_count=len(events))
        for event in events:
            try:
                cost = self.calculator.breakdown(event.model, event.usage)
                saved = self.calculator.cache_savings(event.model, event.usage)
            except UnknownModelPricingError as e:
                logger.error("No pricing configured for model '{}'; add it to the price table", e.model)
                raise

            for delta in (
                plan.users.setdefault((event.date, event.user_id), UsageDelta()),
                plan.models.setdefault((event.date, model_key(event.model)), UsageDelta()),
                plan.quotas.setdefault(event.user_id, UsageDelta()),
                plan.system.setdefault(event.date, UsageDelta()),
            ):
                delta.add(event, cost, saved)
        return plan

    def process_batch(self, events: Sequence[UsageEvent],
                      conn: Optional[sqlite3.Connection] = None) -> None:
        """Apply all four rollups for a batch.

        Args:
            events: Events to aggregate
            conn: Open connection with a write transaction in progress; when
                omitted the rollups run in a transaction of their own

        Raises:
            UnknownModelPricingError: If any event names a model without pricing
            sqlite3.Error: If the store rejects a write
        """
        if not events:
            logger.debug("Empty batch, skipping aggregation")
            return

        started = time.perf_counter()
        plan = self.plan(events)
        if conn is None:
            with write_transaction(self.db_path) as own:
                self._apply(plan, own)
        else:
            self._apply(plan, conn)

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Aggregated {} events into {} user, {} model, {} system rows in {:.0f}ms",
            plan.event_count, len(plan.users), len(plan.models), len(plan.system), elapsed_ms,
        )

    def _apply(self, plan: AggregationPlan, conn: sqlite3.Connection) -> None:
        now = self.clock()
        compression = self.digest_compression

        for (usage_date, user_id), delta in plan.users.items():
            rollups.apply_user_delta(conn, usage_date, user_id, delta, now, compression)

        for (usage_date, model), delta in plan.models.items():
            rollups.apply_model_delta(conn, usage_date, model, delta, now, compression)

        for user_id, delta in plan.quotas.items():
            quotas.ensure_quota(conn, user_id, now, self.quota_defaults.enabled,
                                self.quota_defaults.cost_limit_usd)
            history = quotas.roll_over(conn, user_id, now)
            if history is not None:
                logger.info("Rolled over {} period {} during aggregation", user_id, history.period)
            quotas.add_period_usage(
                conn,
                user_id,
                input_tokens=delta.total_input_tokens,
                output_tokens=delta.output_tokens,
                total_tokens=delta.total_tokens,
                request_count=delta.request_count,
                cost_micros=delta.cost_micros,
                now=now,
                models={
                    model: {"tokens": slot["input_tokens"] + slot["output_tokens"],
                            "cost_micros": slot["cost_micros"]}
                    for model, slot in delta.models.items()
                },
            )

        for usage_date, delta in plan.system.items():
            rollups.apply_system_delta(conn, usage_date, delta, now, compression)
