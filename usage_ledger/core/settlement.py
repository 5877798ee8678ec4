"""
Settlement engine.

Drains pending raw batches into the rollups. Each batch is claimed with a
conditional update, aggregated and marked processed in one transaction, so
a batch is either fully counted once or not counted at all.
"""

import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from usage_ledger.core.aggregation import AggregationEngine
from usage_ledger.core.ledger import QuotaLedger
from usage_ledger.core.logging import get_logger
from usage_ledger.core.periods import utc_now
from usage_ledger.storage.db import write_transaction
from usage_ledger.storage.repository import RawEventRepository

logger = get_logger(__name__)

DEFAULT_CLAIM_TIMEOUT = timedelta(minutes=120)


class BatchClaimLostError(RuntimeError):
    """The batch left ``processing`` while this worker was aggregating it."""

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Claim on batch {batch_id} was lost before it could be marked processed")


class SettlementEngine:
    """Turns pending raw batches into rollup updates."""

    def __init__(self, raw_store: RawEventRepository, aggregation: AggregationEngine,
                 ledger: Optional[QuotaLedger] = None,
                 claim_timeout: timedelta = DEFAULT_CLAIM_TIMEOUT,
                 clock: Callable[[], datetime] = utc_now):
        self.raw_store = raw_store
        self.aggregation = aggregation
        self.ledger = ledger
        self.claim_timeout = claim_timeout
        self.clock = clock

    def settle(self) -> int:
        """Settle every pending batch, oldest first.

        A failing batch is logged, released back to pending and skipped; it
        never stops the remaining batches.

        Returns:
            Number of batches settled by this run
        """
        started = time.perf_counter()
        self._roll_over_expired_periods()

        released = self.raw_store.release_stale_claims(self.clock() - self.claim_timeout)
        if released:
            logger.warning("Released {} stale batch claims older than {}", released, self.claim_timeout)

        pending = self.raw_store.list_pending()
        if not pending:
            logger.debug("No pending batches to settle")
            return 0

        logger.info("Settlement started: {} pending batches", len(pending))
        settled = failed = events = 0
        for batch_id, event_count in pending:
            outcome = self.settle_batch(batch_id)
            if outcome is True:
                settled += 1
                events += event_count
            elif outcome is False:
                failed += 1

        elapsed = time.perf_counter() - started
        logger.info(
            "Settlement finished in {:.2f}s: {} batches ({} events) settled, {} failed",
            elapsed, settled, events, failed,
        )
        return settled

    def settle_batch(self, batch_id: str) -> Optional[bool]:
        """Claim, decode, aggregate and mark one batch.

        Returns:
            True if settled, False if decoding or aggregation failed (the batch
            is back in pending), None if another worker holds or finished the batch
        """
        if not self.raw_store.claim(batch_id, now=self.clock()):
            logger.debug("Batch {} already claimed elsewhere, skipping", batch_id)
            return None

        try:
            batch = self.raw_store.get(batch_id)
            with write_transaction(self.raw_store.db_path) as conn:
                self.aggregation.process_batch(batch.events, conn=conn)
                if not self.raw_store.mark_processed(batch_id, conn=conn, now=self.clock()):
                    raise BatchClaimLostError(batch_id)
        except BatchClaimLostError:
            logger.error("Batch {} was reclaimed during settlement; rolled back", batch_id)
            return False
        except Exception:
            logger.exception("Settlement of batch {} failed; left pending for retry", batch_id)
            self.raw_store.release(batch_id)
            return False
        return True

    def _roll_over_expired_periods(self) -> None:
        if self.ledger is None:
            return
        try:
            archived = self.ledger.roll_over_expired()
        except Exception:
            logger.exception("Period rollover before settlement failed")
            return
        if archived:
            logger.info("Archived {} expired quota periods", archived)
