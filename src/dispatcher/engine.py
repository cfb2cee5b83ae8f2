import logging
import time

import requests

from src.models.delivery import DeliveryResult

logger = logging.getLogger(__name__)


class WebhookDeliveryEngine:
    """Posts signed webhook bodies to subscriber endpoints with a bounded timeout."""

    def __init__(self, timeout_seconds: float = 30, response_body_limit: int = 1000, session: requests.Session | None = None):
        self.timeout_seconds = timeout_seconds
        self.response_body_limit = response_body_limit
        self.session = session

    def post(self, url: str, body: str, headers: dict[str, str]) -> DeliveryResult:
        """Send one request. Never raises for transport failures; they land in ``error``."""
        start = time.monotonic()
        status_code = None
        response_body = None
        error = None

        try:
            resp = (self.session or requests).post(
                url,
                data=body.encode("utf-8"),
                headers=headers,
                timeout=self.timeout_seconds,
            )
            status_code = resp.status_code
            response_body = resp.text[: self.response_body_limit]
        except requests.exceptions.Timeout:
            error = "timeout"
        except requests.exceptions.ConnectionError:
            error = "connection_error"
        except requests.exceptions.RequestException as e:
            error = str(e)[: self.response_body_limit]

        elapsed_ms = (time.monotonic() - start) * 1000
        logger.debug("POST %s -> %s (%.1fms, error=%s)", url, status_code, elapsed_ms, error)
        return DeliveryResult(
            status_code=status_code,
            response_time_ms=elapsed_ms,
            response_body=response_body,
            error=error,
        )
