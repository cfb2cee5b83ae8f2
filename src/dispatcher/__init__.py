from .dispatcher import PaymentLinkWebhookDispatcher, build_payload
from .engine import WebhookDeliveryEngine
from .retry import RetryManager
from .signer import SIGNATURE_HEADER, WebhookSigner
from .sweeper import DeliverySweeper, PeriodicTask

__all__ = [
    "PaymentLinkWebhookDispatcher",
    "build_payload",
    "WebhookDeliveryEngine",
    "RetryManager",
    "WebhookSigner",
    "SIGNATURE_HEADER",
    "DeliverySweeper",
    "PeriodicTask",
]
