import random
from datetime import datetime, timedelta

from src.models.payment_link import RetryPolicy


class RetryManager:
    """Retry decisions and backoff scheduling for payment-link webhook delivery.

    Delays grow as ``retry_delay_ms * 2 ** attempts`` with up to
    ``jitter_ratio`` of extra random delay, capped at ``max_delay_seconds``.
    """

    def __init__(
        self,
        jitter_ratio: float = 0.1,
        max_delay_seconds: float = 3600.0,
        rng: random.Random | None = None,
    ):
        self.jitter_ratio = jitter_ratio
        self.max_delay_seconds = max_delay_seconds
        self._rng = rng or random.Random()

    def should_retry(self, status_code: int | None) -> bool:
        """Anything but a 2xx is retried, including timeouts and connection errors (None)."""
        if status_code is None:
            return True
        return not 200 <= status_code < 300

    def next_delay(self, policy: RetryPolicy, attempts: int) -> float:
        """Seconds to wait after the ``attempts``-th failed delivery (1-indexed)."""
        base = policy.retry_delay_ms / 1000.0 * (2 ** attempts)
        jitter = self._rng.uniform(0, base * self.jitter_ratio) if self.jitter_ratio > 0 else 0.0
        return min(base + jitter, self.max_delay_seconds)

    def has_attempts_remaining(self, attempts: int, max_attempts: int) -> bool:
        return attempts < max_attempts

    def next_retry_at(
        self,
        policy: RetryPolicy,
        attempts: int,
        max_attempts: int,
        now: datetime,
    ) -> datetime | None:
        """Due time of the next attempt, or None once the attempt budget is spent."""
        if not self.has_attempts_remaining(attempts, max_attempts):
            return None
        return now + timedelta(seconds=self.next_delay(policy, attempts))
