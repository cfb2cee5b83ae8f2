import logging

from src.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)


class AlertManager:
    """Fires once when the payment-link delivery failure rate crosses a threshold.

    The alert re-arms after the rate drops back under the threshold.
    """

    def __init__(
        self,
        metrics: MetricsCollector,
        threshold: float = 0.10,
        min_deliveries: int = 1,
        callback=None,
    ):
        self.metrics = metrics
        self.threshold = threshold
        self.min_deliveries = min_deliveries
        self.callback = callback
        self._fired = False
        self._alerts: list[dict] = []

    def check(self) -> dict | None:
        total = self.metrics.total_in_window()
        if total == 0 or total < self.min_deliveries:
            return None

        rate = self.metrics.failure_rate()
        if rate <= self.threshold:
            self._fired = False
            return None
        if self._fired:
            return None

        failures = self.metrics.failure_count_in_window()
        alert = {
            "type": "payment_link_webhook_failure_rate",
            "failure_rate": rate,
            "threshold": self.threshold,
            "total_deliveries": total,
            "failed_deliveries": failures,
            "failures_by_event_type": self.metrics.failures_by_event_type(),
            "message": (
                f"Payment-link webhook failure rate {rate:.1%} exceeds "
                f"threshold {self.threshold:.1%} "
                f"({failures}/{total} deliveries failed)"
            ),
        }
        self._fired = True
        self._alerts.append(alert)
        logger.warning(alert["message"])

        if self.callback:
            self.callback(alert)
        return alert

    def get_alerts(self) -> list[dict]:
        return list(self._alerts)

    def reset(self) -> None:
        self._fired = False
        self._alerts.clear()
