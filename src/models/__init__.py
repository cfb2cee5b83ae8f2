from .transaction import Transaction, TransactionStatus, TransactionType, TERMINAL_STATUSES
from .payment_link import PaymentLink, RetryPolicy, WebhookEventType, WebhookSubscription
from .webhook import DepositEvent, ProviderStatus
from .delivery import DeliveryAttempt, DeliveryResult, DeliveryStatus

__all__ = [
    "Transaction", "TransactionStatus", "TransactionType", "TERMINAL_STATUSES",
    "PaymentLink", "RetryPolicy", "WebhookEventType", "WebhookSubscription",
    "DepositEvent", "ProviderStatus",
    "DeliveryAttempt", "DeliveryResult", "DeliveryStatus",
]
