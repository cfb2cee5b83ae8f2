import uuid
from datetime import timedelta

from src.models.payment_link import PaymentLink, RetryPolicy, WebhookEventType, WebhookSubscription
from src.models.transaction import Transaction, TransactionStatus, TransactionType
from src.models.webhook import DepositEvent
from src.utils.clock import utcnow


class TransactionFactory:
    """Factory for creating Transaction instances with sensible defaults."""

    @staticmethod
    def create(**overrides) -> Transaction:
        defaults = {
            "id": str(uuid.uuid4()),
            "external_id": uuid.uuid4().hex,
            "type": TransactionType.DEPOSIT,
            "status": TransactionStatus.PENDING,
            "amount": 37500,
            "created_at": utcnow(),
            "metadata": {},
        }
        defaults.update(overrides)
        return Transaction(**defaults)


class PaymentLinkFactory:

    @staticmethod
    def create(**overrides) -> PaymentLink:
        defaults = {
            "id": f"plink_{uuid.uuid4().hex[:12]}",
            "user_id": f"user_{uuid.uuid4().hex[:8]}",
        }
        defaults.update(overrides)
        return PaymentLink(**defaults)


class SubscriptionFactory:
    """Factory for payment-link webhook subscriptions."""

    @staticmethod
    def create(payment_link_id: str, url: str = "http://127.0.0.1:9/webhook", **overrides) -> WebhookSubscription:
        defaults = {
            "id": f"whk_{uuid.uuid4().hex[:12]}",
            "payment_link_id": payment_link_id,
            "url": url,
            "secret": uuid.uuid4().hex,
            "events": frozenset({WebhookEventType.COMPLETED}),
            "name": "merchant webhook",
            "retry_policy": RetryPolicy(max_retries=3, retry_delay_ms=1000),
        }
        defaults.update(overrides)
        if not isinstance(defaults["events"], frozenset):
            defaults["events"] = frozenset(defaults["events"])
        return WebhookSubscription(**defaults)


class DepositEventFactory:
    """Builds provider deposit payloads in the wire format (camelCase)."""

    @staticmethod
    def payload(qr_id: str | None = None, status: str = "depix_sent", **overrides) -> dict:
        now = utcnow()
        payload = {
            "qrId": qr_id or uuid.uuid4().hex,
            "status": status,
            "bankTxId": f"fitbank_{uuid.uuid4().hex[:20].upper()}",
            "blockchainTxID": uuid.uuid4().hex + uuid.uuid4().hex,
            "customerMessage": None,
            "payerName": "Cliente Teste",
            "payerEUID": f"EU{uuid.uuid4().int % 10**15:015d}",
            "payerTaxNumber": "12345678900",
            "pixKey": str(uuid.uuid4()),
            "expiration": (now + timedelta(minutes=30)).isoformat(),
            "valueInCents": 37500,
        }
        payload.update(overrides)
        return payload

    @staticmethod
    def create(qr_id: str | None = None, status: str = "depix_sent", **overrides) -> DepositEvent:
        return DepositEvent.from_payload(DepositEventFactory.payload(qr_id, status, **overrides))
