"""
Pipeline facade.

Wires buffer, raw store, aggregation, settlement and quota ledger from one
configuration, and exposes the operational triggers and admin actions.
"""

import threading
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from usage_ledger.config.loader import LedgerConfig
from usage_ledger.core.aggregation import AggregationEngine, QuotaDefaults
from usage_ledger.core.buffer import EventBuffer
from usage_ledger.core.consumer import UsageEventConsumer
from usage_ledger.core.ledger import QuotaLedger
from usage_ledger.core.logging import get_logger
from usage_ledger.core.periods import utc_now
from usage_ledger.core.pricing import CostCalculator
from usage_ledger.core.scheduler import CronScheduler
from usage_ledger.core.settlement import SettlementEngine
from usage_ledger.storage.models import RawBatch, UserQuota
from usage_ledger.storage.repository import RawEventRepository, initialize_schema
from usage_ledger.storage.rollups import RollupRepository

logger = get_logger(__name__)


class UsagePipeline:
    """Ingestion-to-aggregation pipeline.

    The schema is created on construction. ``start`` starts the flush and
    settlement schedules. ``stop`` stops accepting events, waits for an in-flight
    settlement and flushes the buffer exactly once.
    """

    def __init__(self, config: Optional[LedgerConfig] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.config = config or LedgerConfig.defaults()
        self.clock = clock
        db_path = self.config.database_path

        initialize_schema(db_path)
        self.raw_store = RawEventRepository(db_path)
        self.rollups = RollupRepository(db_path)
        self.calculator = CostCalculator(self.config.pricing)
        self.buffer = EventBuffer(
            self.raw_store,
            size=self.config.buffer.size,
            flush_cron=self.config.buffer.flush_cron,
            clock=clock,
        )
        self.consumer = UsageEventConsumer(self.buffer)
        self.ledger = QuotaLedger(db_path, clock=clock)
        self.aggregation = AggregationEngine(
            db_path,
            calculator=self.calculator,
            digest_compression=self.config.digest_compression,
            quota_defaults=QuotaDefaults(
                enabled=self.config.quota.default_enabled,
                cost_limit_usd=self.config.quota.default_cost_limit_usd,
            ),
            clock=clock,
        )
        self.settlement = SettlementEngine(
            self.raw_store,
            self.aggregation,
            ledger=self.ledger,
            claim_timeout=self.config.settlement.claim_timeout,
            clock=clock,
        )
        self._settlement_scheduler = CronScheduler(
            "settlement", self.config.settlement.cron, self.trigger_settlement, clock=clock)
        self._settle_lock = threading.Lock()
        self._stopped = False

    def start(self) -> None:
        self.buffer.start()
        self._settlement_scheduler.start()
        logger.info("Usage pipeline started (db={})", self.config.database_path)

    def stop(self) -> Optional[RawBatch]:
        """Graceful shutdown; safe to call more than once."""
        if self._stopped:
            return None
        self._stopped = True
        self.buffer.close()
        self._settlement_scheduler.stop()
        # wait out a manually triggered run still in flight
        with self._settle_lock:
            batch = self.buffer.stop()
        logger.info("Usage pipeline stopped ({} events accepted, {} dropped)",
                    self.consumer.accepted, self.consumer.dropped)
        return batch

    def trigger_flush(self) -> Optional[RawBatch]:
        return self.buffer.flush_buffer()

    def trigger_settlement(self) -> int:
        """Run settlement now; waits if a scheduled run is in progress."""
        with self._settle_lock:
            return self.settlement.settle()

    def trigger_flush_then_settle(self) -> int:
        self.trigger_flush()
        return self.trigger_settlement()

    def set_quota_config(self, user_id: str, enabled: bool, cost_limit: Decimal) -> UserQuota:
        return self.ledger.update_quota_config(user_id, enabled, cost_limit)

    def grant_bonus(self, user_id: str, amount: Decimal, reason: Optional[str],
                    granted_by: str) -> UserQuota:
        return self.ledger.grant_bonus(user_id, amount, reason, granted_by)
