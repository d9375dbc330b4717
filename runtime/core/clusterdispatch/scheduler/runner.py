"""Background loop that requeues supervised drivers once their backoff elapses.

Matching queued drivers against resource offers is done by the execution
layer; this loop only moves RETRYING drivers back to QUEUED.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from clusterdispatch.config.settings import SchedulerConfig
from clusterdispatch.errors import ConflictError, StorageFailure
from clusterdispatch.scheduler.facade import SchedulerFacade

logger = logging.getLogger(__name__)


@dataclass
class RetryLoop:
    config: SchedulerConfig
    facade: SchedulerFacade
    _stop: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _thread: threading.Thread | None = field(default=None, init=False, repr=False)

    def run_once(self) -> list[str]:
        try:
            return self.facade.promote_due_retries()
        except (ConflictError, StorageFailure) as e:
            # Not ready yet, or the store is down: try again on the next tick.
            logger.warning("retry_promotion_failed: %s", e, extra={"event": "retry_promotion_failed"})
            return []

    def run_forever(self) -> None:
        if not self.config.retry_loop_enabled:
            logger.info("retry_loop_disabled", extra={"event": "retry_loop_disabled"})
            return
        logger.info("retry_loop_started", extra={"event": "retry_loop_started"})
        while not self._stop.wait(self.config.poll_interval_seconds):
            self.run_once()
        logger.info("retry_loop_stopped", extra={"event": "retry_loop_stopped"})

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self.run_forever, name="retry-loop", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
