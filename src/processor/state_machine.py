from src.models.payment_link import WebhookEventType
from src.models.transaction import TransactionStatus

S = TransactionStatus

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    S.PENDING: frozenset({S.PROCESSING, S.COMPLETED, S.FAILED, S.EXPIRED}),
    S.PROCESSING: frozenset({S.COMPLETED, S.FAILED, S.EXPIRED}),
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELLED: frozenset(),
    S.EXPIRED: frozenset(),
}

_EVENT_FOR_STATUS = {
    S.PROCESSING: WebhookEventType.PROCESSING,
    S.COMPLETED: WebhookEventType.COMPLETED,
    S.FAILED: WebhookEventType.FAILED,
    S.EXPIRED: WebhookEventType.EXPIRED,
}


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def event_type_for(status: TransactionStatus) -> WebhookEventType | None:
    """Outbound payment-link event emitted when a transaction enters ``status``."""
    return _EVENT_FOR_STATUS.get(status)
