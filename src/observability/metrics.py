import threading
import time
from collections import Counter


class MetricsCollector:
    """Rolling-window counters for payment-link webhook deliveries."""

    def __init__(self, window_seconds: float = 300):
        self._window_seconds = window_seconds
        # (monotonic timestamp, event type, succeeded)
        self._outcomes: list[tuple[float, str | None, bool]] = []
        self._lock = threading.Lock()

    def record_success(self, event_type: str | None = None) -> None:
        self._record(event_type, True)

    def record_failure(self, event_type: str | None = None) -> None:
        self._record(event_type, False)

    def _record(self, event_type: str | None, succeeded: bool) -> None:
        with self._lock:
            now = time.monotonic()
            self._prune(now)
            self._outcomes.append((now, event_type, succeeded))

    def _prune(self, now: float) -> None:
        cutoff = now - self._window_seconds
        if self._outcomes and self._outcomes[0][0] < cutoff:
            self._outcomes = [o for o in self._outcomes if o[0] >= cutoff]

    def _window(self, event_type: str | None = None) -> list[tuple[float, str | None, bool]]:
        with self._lock:
            self._prune(time.monotonic())
            if event_type is None:
                return list(self._outcomes)
            return [o for o in self._outcomes if o[1] == event_type]

    def failure_rate(self, event_type: str | None = None) -> float:
        """Failure rate in the current rolling window (0.0 to 1.0)."""
        outcomes = self._window(event_type)
        if not outcomes:
            return 0.0
        return sum(1 for o in outcomes if not o[2]) / len(outcomes)

    def total_in_window(self, event_type: str | None = None) -> int:
        return len(self._window(event_type))

    def failure_count_in_window(self, event_type: str | None = None) -> int:
        return sum(1 for o in self._window(event_type) if not o[2])

    def success_count_in_window(self, event_type: str | None = None) -> int:
        return sum(1 for o in self._window(event_type) if o[2])

    def failures_by_event_type(self) -> dict[str, int]:
        return dict(Counter(o[1] or "unknown" for o in self._window() if not o[2]))

    def reset(self) -> None:
        with self._lock:
            self._outcomes.clear()
