"""
In-memory event buffer.

Collects usage events from many handler threads and writes them to the raw
event store as one batch per flush. Flushes happen when the buffer reaches
its size threshold, on a cron schedule, and on shutdown.
"""

import threading
import time
from datetime import datetime
from typing import Callable, List, Optional

from usage_ledger.core.logging import get_logger
from usage_ledger.core.periods import utc_now
from usage_ledger.core.scheduler import CronScheduler
from usage_ledger.storage.models import RawBatch, UsageEvent
from usage_ledger.storage.repository import RawEventRepository

logger = get_logger(__name__)

DEFAULT_BUFFER_SIZE = 1000
DEFAULT_FLUSH_CRON = "0,30 * * * *"


class BufferClosedError(RuntimeError):
    """Raised by ``add_event`` once shutdown has begun."""


class EventBuffer:
    """Thread-safe event buffer with exclusive, at-least-once flushing.

    A flush swaps the live list out under the buffer lock, so producers are
    never blocked by the write. If the write fails the swapped events are put
    back in front of anything added meanwhile and retried on the next flush.
    """

    def __init__(self, store: RawEventRepository, size: int = DEFAULT_BUFFER_SIZE,
                 flush_cron: str = DEFAULT_FLUSH_CRON,
                 clock: Callable[[], datetime] = utc_now):
        if size <= 0:
            raise ValueError("buffer size must be > 0")
        self.store = store
        self.max_size = size
        self.flush_cron = flush_cron
        self.clock = clock
        self._events: List[UsageEvent] = []
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._accepting = True
        self._scheduler: Optional[CronScheduler] = None

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._events)

    @property
    def accepting(self) -> bool:
        return self._accepting

    def add_event(self, event: UsageEvent) -> bool:
        """Append an event; flush synchronously once the threshold is reached.

        Anything that is not a ``UsageEvent`` is logged and dropped so it can
        never reach a flushed batch.

        Returns:
            True if buffered, False if dropped

        Raises:
            BufferClosedError: If the buffer is shutting down
        """
        if not isinstance(event, UsageEvent):
            logger.warning("Dropping invalid usage event: {!r}", event)
            return False
        with self._lock:
            if not self._accepting:
                raise BufferClosedError("event buffer is closed")
            self._events.append(event)
            full = len(self._events) >= self.max_size
        if full:
            self.flush_buffer()
        return True

    def flush_buffer(self) -> Optional[RawBatch]:
        """Write everything buffered as one raw batch.

        Only one flush runs at a time. An empty buffer is a no-op.

        Returns:
            The persisted batch, or None if nothing was written
        """
        with self._flush_lock:
            with self._lock:
                events, self._events = self._events, []
            if not events:
                return None

            started = time.perf_counter()
            try:
                batch = RawBatch.create(events, now=self.clock())
                self.store.insert(batch)
            except Exception as e:
                with self._lock:
                    self._events[:0] = events
                logger.error("Flush of {} events failed, re-buffered for retry: {}", len(events), e)
                return None

            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.info("Flushed {} events as batch {} in {:.0f}ms",
                        batch.event_count, batch.id, elapsed_ms)
            return batch

    def start(self) -> None:
        """Start the scheduled flush."""
        if self._scheduler is None:
            self._scheduler = CronScheduler("buffer-flush", self.flush_cron, self.flush_buffer,
                                            clock=self.clock)
        self._scheduler.start()

    def close(self) -> None:
        """Stop accepting events; buffered events stay until the next flush."""
        with self._lock:
            self._accepting = False

    def stop(self) -> Optional[RawBatch]:
        """Stop accepting events, stop the schedule and drain the buffer.

        Returns only after the final flush has completed.
        """
        self.close()
        if self._scheduler is not None:
            self._scheduler.stop()
        batch = self.flush_buffer()
        remaining = self.size
        if remaining:
            logger.error("Shutdown flush failed; {} buffered events were not persisted", remaining)
        return batch
