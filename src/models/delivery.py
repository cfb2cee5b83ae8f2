from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from src.models.payment_link import WebhookEventType
from src.utils.crypto import canonical_json


class DeliveryStatus(Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not DeliveryStatus.PENDING


@dataclass
class DeliveryAttempt:
    """One outbound notification of an event to a subscription, retried independently."""

    attempt_id: str
    event_id: str
    subscription_id: str
    payment_link_id: str
    transaction_id: str
    event_type: WebhookEventType
    payload: dict
    signature: str
    created_at: datetime
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    response_code: int | None = None
    response_body: str | None = None
    next_retry_at: datetime | None = None
    last_attempt_at: datetime | None = None
    error: str | None = None

    @property
    def body(self) -> str:
        """Serialized payload; the signature is computed over exactly these bytes."""
        return canonical_json(self.payload)


@dataclass
class DeliveryResult:
    """Outcome of a single HTTP POST to a subscriber endpoint."""

    status_code: int | None
    response_time_ms: float
    response_body: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300
