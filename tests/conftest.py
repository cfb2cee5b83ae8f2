import base64
from datetime import datetime, timedelta, timezone

import pytest

from merchant_server import MerchantWebhookServer
from src.dispatcher.dispatcher import PaymentLinkWebhookDispatcher
from src.dispatcher.engine import WebhookDeliveryEngine
from src.dispatcher.retry import RetryManager
from src.dispatcher.signer import WebhookSigner
from src.models.delivery import DeliveryResult
from src.models.payment_link import PaymentLink, WebhookSubscription
from src.models.transaction import Transaction
from src.observability.alerting import AlertManager
from src.observability.audit import AuditLog
from src.observability.metrics import MetricsCollector
from src.processor.deposit import DepositWebhookProcessor
from src.receiver.server import DepositWebhookServer
from src.storage.memory import InMemoryRepository
from src.storage.sql import SqlRepository
from src.utils.factories import (
    DepositEventFactory,
    PaymentLinkFactory,
    SubscriptionFactory,
    TransactionFactory,
)


WEBHOOK_SECRET = "test-secret-key-for-hmac"
PROVIDER_SECRET = "provider-shared-secret"
START = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeEngine:
    """Stands in for WebhookDeliveryEngine; replays scripted results and records requests."""

    def __init__(self):
        self.results: list[DeliveryResult] = []
        self.default = DeliveryResult(status_code=200, response_time_ms=1.0, response_body='{"status":"ok"}')
        self.requests: list[dict] = []

    def script(self, *status_codes: int | None, error: str = "timeout") -> "FakeEngine":
        for code in status_codes:
            if code is None:
                self.results.append(DeliveryResult(status_code=None, response_time_ms=1.0, error=error))
            else:
                self.results.append(DeliveryResult(status_code=code, response_time_ms=1.0, response_body=f"HTTP {code}"))
        return self

    def post(self, url: str, body: str, headers: dict[str, str]) -> DeliveryResult:
        self.requests.append({"url": url, "body": body, "headers": dict(headers)})
        return self.results.pop(0) if self.results else self.default


class ManualExecutor:
    """Executor that queues submitted work until the test runs it."""

    def __init__(self):
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        self.pending.append((fn, args, kwargs))

    def run_all(self) -> int:
        ran = 0
        while self.pending:
            fn, args, kwargs = self.pending.pop(0)
            fn(*args, **kwargs)
            ran += 1
        return ran


def seed(repository, *objects):
    """Persist factory-built objects through one unit of work."""
    with repository.atomic() as uow:
        for obj in objects:
            if isinstance(obj, Transaction):
                uow.transactions.add(obj)
            elif isinstance(obj, PaymentLink):
                uow.payment_links.add(obj)
            elif isinstance(obj, WebhookSubscription):
                uow.subscriptions.add(obj)
            else:
                raise TypeError(f"cannot seed {type(obj).__name__}")
    return objects


@pytest.fixture
def webhook_secret():
    return WEBHOOK_SECRET


@pytest.fixture
def signer():
    return WebhookSigner(WEBHOOK_SECRET)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def retry_manager():
    return RetryManager(jitter_ratio=0)


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def sql_repository():
    repo = SqlRepository.from_url("sqlite://")
    yield repo
    repo.engine.dispose()


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def executor():
    return ManualExecutor()


@pytest.fixture
def metrics():
    return MetricsCollector(window_seconds=300)


@pytest.fixture
def alert_manager(metrics):
    return AlertManager(metrics=metrics, threshold=0.10)


@pytest.fixture
def audit():
    return AuditLog()


@pytest.fixture
def dispatcher(repository, fake_engine, retry_manager, metrics, executor, clock):
    return PaymentLinkWebhookDispatcher(
        repository,
        fake_engine,
        retry_manager,
        metrics=metrics,
        executor=executor,
        clock=clock,
    )


@pytest.fixture
def processor(repository, dispatcher, audit, clock):
    return DepositWebhookProcessor(repository, dispatcher, audit=audit, clock=clock)


@pytest.fixture
def http_engine():
    return WebhookDeliveryEngine(timeout_seconds=5)


@pytest.fixture
def payment_link(repository):
    link = PaymentLinkFactory.create()
    seed(repository, link)
    return link


@pytest.fixture
def merchant_server():
    server = MerchantWebhookServer()
    server.start()
    yield server
    server.stop()


@pytest.fixture
def transaction_factory():
    return TransactionFactory


@pytest.fixture
def subscription_factory():
    return SubscriptionFactory


@pytest.fixture
def deposit_event_factory():
    return DepositEventFactory


@pytest.fixture
def http_dispatcher(repository, http_engine, retry_manager, metrics, clock):
    """Dispatcher that delivers inline over real HTTP."""
    return PaymentLinkWebhookDispatcher(repository, http_engine, retry_manager, metrics=metrics, clock=clock)


@pytest.fixture
def signed_merchant_server(webhook_secret):
    server = MerchantWebhookServer(secret=webhook_secret)
    server.start()
    yield server
    server.stop()


def basic_auth(secret: str = PROVIDER_SECRET) -> dict[str, str]:
    """Authorization header in the provider's format: Basic base64(secret:)."""
    token = base64.b64encode(f"{secret}:".encode()).decode()
    return {"Authorization": f"Basic {token}"}


@pytest.fixture
def deposit_server(processor, audit):
    server = DepositWebhookServer(processor, audit, secret=PROVIDER_SECRET)
    server.start()
    yield server
    server.stop()
