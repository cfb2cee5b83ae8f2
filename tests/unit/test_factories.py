import pytest

from src.models.payment_link import WebhookEventType
from src.models.transaction import TransactionStatus, TransactionType
from src.models.webhook import ProviderStatus


class TestTransactionFactory:

    @pytest.mark.unit
    def test_defaults(self, transaction_factory):
        tx = transaction_factory.create()
        assert tx.type is TransactionType.DEPOSIT
        assert tx.status is TransactionStatus.PENDING
        assert tx.amount == 37500
        assert tx.external_id

    @pytest.mark.unit
    def test_unique_ids(self, transaction_factory):
        a, b = transaction_factory.create(), transaction_factory.create()
        assert a.id != b.id
        assert a.external_id != b.external_id

    @pytest.mark.unit
    def test_overrides(self, transaction_factory):
        tx = transaction_factory.create(amount=100, status=TransactionStatus.PROCESSING)
        assert tx.amount == 100
        assert tx.status is TransactionStatus.PROCESSING

    @pytest.mark.unit
    def test_summary_is_snake_case(self, transaction_factory):
        summary = transaction_factory.create(payment_link_id="plink_1").summary()
        assert summary["payment_link_id"] == "plink_1"
        assert summary["currency"] == "BRL"
        assert summary["processed_at"] is None


class TestSubscriptionFactory:

    @pytest.mark.unit
    def test_defaults(self, subscription_factory):
        sub = subscription_factory.create("plink_1")
        assert sub.payment_link_id == "plink_1"
        assert sub.events == frozenset({WebhookEventType.COMPLETED})
        assert sub.active is True
        assert sub.is_subscribed(WebhookEventType.COMPLETED)
        assert not sub.is_subscribed(WebhookEventType.FAILED)

    @pytest.mark.unit
    def test_inactive_is_never_subscribed(self, subscription_factory):
        sub = subscription_factory.create("plink_1", active=False)
        assert not sub.is_subscribed(WebhookEventType.COMPLETED)

    @pytest.mark.unit
    def test_events_coerced_to_frozenset(self, subscription_factory):
        sub = subscription_factory.create("plink_1", events=[WebhookEventType.FAILED])
        assert sub.events == frozenset({WebhookEventType.FAILED})


class TestDepositEventFactory:

    @pytest.mark.unit
    def test_payload_uses_wire_names(self, deposit_event_factory):
        payload = deposit_event_factory.payload(qr_id="qr-1")
        assert payload["qrId"] == "qr-1"
        assert payload["status"] == "depix_sent"
        assert payload["valueInCents"] == 37500
        assert {"bankTxId", "blockchainTxID", "payerEUID", "pixKey", "expiration"} <= set(payload)

    @pytest.mark.unit
    def test_create_parses_payload(self, deposit_event_factory):
        event = deposit_event_factory.create(status="paid")
        assert event.provider_status is ProviderStatus.PAID
