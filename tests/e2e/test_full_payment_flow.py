"""E2E tests: provider webhook in, signed payment-link webhooks out."""

import pytest
import requests

from conftest import PROVIDER_SECRET, basic_auth, seed
from merchant_server import MerchantWebhookServer
from src.dispatcher.signer import SIGNATURE_HEADER, WebhookSigner
from src.dispatcher.sweeper import DeliverySweeper
from src.models.delivery import DeliveryStatus
from src.models.payment_link import WebhookEventType
from src.models.transaction import TransactionStatus
from src.processor.deposit import DepositWebhookProcessor
from src.processor.hooks import BotSyncClient
from src.receiver.server import DepositWebhookServer
from src.replay.guard import ReplayGuard
from src.utils.factories import DepositEventFactory, SubscriptionFactory, TransactionFactory


pytestmark = pytest.mark.e2e


@pytest.fixture
def bot_backend():
    server = MerchantWebhookServer()
    server.start()
    yield server
    server.stop()


@pytest.fixture
def live_processor(repository, http_dispatcher, audit, clock, bot_backend):
    return DepositWebhookProcessor(
        repository,
        http_dispatcher,
        audit=audit,
        hooks=[BotSyncClient(bot_backend.url, timeout_seconds=5)],
        replay_guard=ReplayGuard(),
        clock=clock,
    )


@pytest.fixture
def live_server(live_processor, audit):
    server = DepositWebhookServer(live_processor, audit, secret=PROVIDER_SECRET)
    server.start()
    yield server
    server.stop()


@pytest.fixture
def deposit(repository, payment_link):
    tx = TransactionFactory.create(
        external_id="qr-flow",
        amount=37500,
        payment_link_id=payment_link.id,
        user_id="user_flow",
    )
    seed(repository, tx)
    return tx


def _post(server, **overrides):
    payload = DepositEventFactory.payload(qr_id="qr-flow", **overrides)
    return requests.post(server.url, json=payload, headers=basic_auth(), timeout=5)


def _attempts(repository, tx):
    with repository.atomic() as uow:
        return uow.attempts.list_for_transaction(tx.id)


class TestFullPaymentFlow:
    """Deposit settled by the provider and announced to the merchant."""

    def test_completion_reaches_merchant(self, live_server, repository, payment_link, deposit, signed_merchant_server, webhook_secret, bot_backend):
        """A depix_sent webhook ends with a verified merchant delivery and a bot sync."""
        seed(repository, SubscriptionFactory.create(payment_link.id, url=signed_merchant_server.url, secret=webhook_secret))

        resp = _post(live_server)

        assert resp.json()["result"]["deliveries"] == 1
        (received,) = signed_merchant_server.get_received_events()
        assert WebhookSigner(webhook_secret).verify(received["body"], received["headers"][SIGNATURE_HEADER])
        assert received["payload"]["event"] == WebhookEventType.COMPLETED.value
        assert received["payload"]["transaction"]["id"] == deposit.id
        assert received["payload"]["transaction"]["status"] == "COMPLETED"

        (attempt,) = _attempts(repository, deposit)
        assert attempt.status is DeliveryStatus.SUCCESS

        (synced,) = bot_backend.get_received_events()
        assert synced["payload"]["user_id"] == "user_flow"

    def test_payment_link_counters(self, live_server, repository, payment_link, deposit):
        """Completion bumps the payment link totals once."""
        _post(live_server)
        _post(live_server)

        with repository.atomic() as uow:
            link = uow.payment_links.get(payment_link.id)
        assert link.total_payments == 1
        assert link.total_amount == 37500
        assert link.last_payment_id == deposit.id

    def test_paid_then_sent(self, live_server, repository, payment_link, deposit, merchant_server):
        """PENDING -> PROCESSING -> COMPLETED produces one event per step for subscribers."""
        seed(repository, SubscriptionFactory.create(
            payment_link.id,
            url=merchant_server.url,
            events={WebhookEventType.PROCESSING, WebhookEventType.COMPLETED},
        ))

        _post(live_server, status="paid")
        _post(live_server, status="depix_sent")

        events = [e["payload"]["event"] for e in merchant_server.get_received_events()]
        assert events == [WebhookEventType.PROCESSING.value, WebhookEventType.COMPLETED.value]

    def test_merchant_outage_recovered_by_sweeper(self, live_server, http_dispatcher, repository, payment_link, deposit, merchant_server, clock):
        """Failed deliveries are retried by the sweeper after their backoff."""
        merchant_server.script_response_codes(500)
        seed(repository, SubscriptionFactory.create(payment_link.id, url=merchant_server.url))
        sweeper = DeliverySweeper(http_dispatcher)

        _post(live_server)
        (attempt,) = _attempts(repository, deposit)
        assert attempt.status is DeliveryStatus.PENDING
        assert sweeper.run_once() == 0

        clock.advance(2)

        assert sweeper.run_once() == 1
        (attempt,) = _attempts(repository, deposit)
        assert attempt.status is DeliveryStatus.SUCCESS
        assert attempt.attempts == 2
        assert merchant_server.get_processed_count() == 2

    def test_deactivated_subscription_cancelled(self, live_server, http_dispatcher, repository, payment_link, deposit, merchant_server, clock):
        """Deactivating a subscription cancels its pending retries."""
        merchant_server.set_response_code(503)
        sub = SubscriptionFactory.create(payment_link.id, url=merchant_server.url)
        seed(repository, sub)

        _post(live_server)
        with repository.atomic() as uow:
            uow.subscriptions.set_active(sub.id, False)
        clock.advance(2)
        http_dispatcher.deliver_due()

        (attempt,) = _attempts(repository, deposit)
        assert attempt.status is DeliveryStatus.CANCELLED
        assert merchant_server.get_processed_count() == 1

    def test_failure_event_to_failure_subscribers(self, live_server, repository, payment_link, deposit, merchant_server):
        """Only subscribers of the failed event hear about a failed deposit."""
        seed(
            repository,
            SubscriptionFactory.create(payment_link.id, url=merchant_server.url, events={WebhookEventType.FAILED}),
            SubscriptionFactory.create(payment_link.id, url=merchant_server.url),
        )

        resp = _post(live_server, status="cancelled")

        assert resp.json()["result"]["status"] == TransactionStatus.FAILED.value
        (received,) = merchant_server.get_received_events()
        assert received["payload"]["event"] == WebhookEventType.FAILED.value
