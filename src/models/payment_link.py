from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class WebhookEventType(Enum):
    CREATED = "payment.created"
    PROCESSING = "payment.processing"
    COMPLETED = "payment.completed"
    FAILED = "payment.failed"
    REFUNDED = "payment.refunded"
    EXPIRED = "payment.expired"


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    retry_delay_ms: int = 1000

    @property
    def max_attempts(self) -> int:
        # A subscription always gets at least one delivery.
        return max(1, self.max_retries)


@dataclass
class PaymentLink:
    id: str
    user_id: str | None = None
    total_payments: int = 0
    total_amount: int = 0
    last_payment_id: str | None = None


@dataclass
class WebhookSubscription:
    id: str
    payment_link_id: str
    url: str
    secret: str
    events: frozenset[WebhookEventType]
    name: str = ""
    active: bool = True
    headers: dict[str, str] = field(default_factory=dict)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    failure_count: int = 0
    last_triggered_at: datetime | None = None

    def is_subscribed(self, event_type: WebhookEventType) -> bool:
        return self.active and event_type in self.events
