"""
Cron-driven background jobs.
"""

import threading
from datetime import datetime
from typing import Callable, Optional

from croniter import croniter

from usage_ledger.core.logging import get_logger
from usage_ledger.core.periods import utc_now

logger = get_logger(__name__)


class CronScheduler:
    """Runs ``job`` on a daemon thread at every fire time of a cron expression.

    A failing job is logged and the schedule continues. ``stop`` waits for
    a job that is already running to finish.
    """

    def __init__(self, name: str, expression: str, job: Callable[[], object],
                 clock: Callable[[], datetime] = utc_now):
        if not croniter.is_valid(expression):
            raise ValueError(f"Invalid cron expression for {name}: {expression!r}")
        self.name = name
        self.expression = expression
        self.job = job
        self.clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def next_fire(self, after: Optional[datetime] = None) -> datetime:
        """Next fire time strictly after ``after`` (default: now)."""
        return croniter(self.expression, after or self.clock()).get_next(datetime)

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info("Scheduled {} with '{}', next run at {}",
                    self.name, self.expression, self.next_fire().isoformat())

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_once(self) -> None:
        try:
            self.job()
        except Exception:
            logger.exception("Scheduled job {} failed", self.name)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            now = self.clock()
            delay = (self.next_fire(now) - now).total_seconds()
            if self._stop_event.wait(max(0.0, delay)):
                break
            self.run_once()
