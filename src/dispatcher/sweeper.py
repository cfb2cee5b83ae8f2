import logging
import threading
from datetime import datetime
from typing import Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``fn`` every ``interval`` seconds on a daemon thread until stopped."""

    def __init__(self, name: str, interval: float, fn: Callable[[], object]):
        self.name = name
        self.interval = interval
        self._fn = fn
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info("%s started (every %ss)", self.name, self.interval)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("%s stopped", self.name)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._fn()
            except Exception:
                logger.exception("%s run failed", self.name)
            self._stop.wait(self.interval)


class DeliverySweeper:
    """Periodically delivers every due payment-link webhook attempt.

    Attempts survive restarts in the repository, so this is what eventually
    retries them after a backoff or a crash between commit and delivery.
    """

    def __init__(self, dispatcher, interval_seconds: float = 5.0, batch_size: int = 50):
        self.dispatcher = dispatcher
        self.batch_size = batch_size
        self._task = PeriodicTask("delivery-sweeper", interval_seconds, self.run_once)

    @property
    def running(self) -> bool:
        return self._task.running

    def run_once(self, now: datetime | None = None) -> int:
        """Deliver one batch of due attempts. Returns how many were attempted."""
        delivered = self.dispatcher.deliver_due(now=now, limit=self.batch_size)
        if delivered:
            logger.info("Sweeper processed %d due webhook attempt(s)", len(delivered))
        return len(delivered)

    def start(self) -> None:
        self._task.start()

    def stop(self) -> None:
        self._task.stop()
