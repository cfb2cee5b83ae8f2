"""Process wiring: builds the repository, processor, dispatcher and background tasks from settings."""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import requests

from src.config import Settings, get_settings
from src.dispatcher import (
    DeliverySweeper,
    PaymentLinkWebhookDispatcher,
    PeriodicTask,
    RetryManager,
    WebhookDeliveryEngine,
)
from src.observability.alerting import AlertManager
from src.observability.audit import AuditLog
from src.observability.log_config import configure_logging
from src.observability.metrics import MetricsCollector
from src.processor import BotSyncClient, DepositWebhookProcessor, TransactionExpiryService, ValidationDepositRecorder
from src.receiver.server import DepositWebhookServer
from src.replay.guard import ReplayGuard
from src.storage import Repository, build_repository

logger = logging.getLogger(__name__)


@dataclass
class Application:
    settings: Settings
    repository: Repository
    audit: AuditLog
    metrics: MetricsCollector
    alerts: AlertManager
    dispatcher: PaymentLinkWebhookDispatcher
    processor: DepositWebhookProcessor
    expiry: TransactionExpiryService
    sweeper: DeliverySweeper
    server: DepositWebhookServer
    executor: ThreadPoolExecutor
    session: requests.Session
    background: list[PeriodicTask]

    def start_background(self) -> None:
        self.sweeper.start()
        for task in self.background:
            task.start()

    def stop(self) -> None:
        self.server.stop()
        self.sweeper.stop()
        for task in self.background:
            task.stop()
        self.executor.shutdown(wait=True)
        self.session.close()


def build_application(settings: Settings | None = None) -> Application:
    settings = settings or get_settings()

    repository = build_repository(settings.DATABASE_URL)
    audit = AuditLog()
    metrics = MetricsCollector(window_seconds=settings.METRICS_WINDOW_SECONDS)
    alerts = AlertManager(metrics, threshold=settings.ALERT_FAILURE_THRESHOLD)

    session = requests.Session()
    executor = ThreadPoolExecutor(max_workers=settings.DELIVERY_WORKERS, thread_name_prefix="webhook-delivery")
    dispatcher = PaymentLinkWebhookDispatcher(
        repository,
        WebhookDeliveryEngine(
            timeout_seconds=settings.DELIVERY_TIMEOUT_SECONDS,
            response_body_limit=settings.RESPONSE_BODY_LIMIT,
            session=session,
        ),
        RetryManager(
            jitter_ratio=settings.RETRY_JITTER_RATIO,
            max_delay_seconds=settings.MAX_RETRY_DELAY_SECONDS,
        ),
        metrics=metrics,
        executor=executor,
        lease_seconds=settings.DELIVERY_LEASE_SECONDS,
    )

    hooks = [ValidationDepositRecorder(audit)]
    if settings.BOT_SYNC_URL:
        hooks.append(BotSyncClient(settings.BOT_SYNC_URL, settings.BOT_SYNC_TIMEOUT_SECONDS, session=session))

    processor = DepositWebhookProcessor(
        repository,
        dispatcher,
        audit=audit,
        hooks=hooks,
        replay_guard=ReplayGuard(window_seconds=settings.REPLAY_WINDOW_SECONDS),
    )
    expiry = TransactionExpiryService(
        repository,
        processor,
        timeout_seconds=settings.TRANSACTION_TIMEOUT_SECONDS,
        audit=audit,
    )
    sweeper = DeliverySweeper(
        dispatcher,
        interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
        batch_size=settings.SWEEP_BATCH_SIZE,
    )
    server = DepositWebhookServer(
        processor,
        audit,
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        secret=settings.DEPOSIT_WEBHOOK_SECRET,
    )
    background = [
        PeriodicTask("transaction-expiry", settings.EXPIRY_INTERVAL_SECONDS, expiry.expire_stale),
        PeriodicTask("delivery-alerts", settings.SWEEP_INTERVAL_SECONDS, alerts.check),
    ]

    return Application(
        settings=settings,
        repository=repository,
        audit=audit,
        metrics=metrics,
        alerts=alerts,
        dispatcher=dispatcher,
        processor=processor,
        expiry=expiry,
        sweeper=sweeper,
        server=server,
        executor=executor,
        session=session,
        background=background,
    )


def main() -> None:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    if not settings.DEPOSIT_WEBHOOK_SECRET:
        logger.warning("DEPOSIT_WEBHOOK_SECRET is not set; the deposit endpoint accepts unauthenticated calls")

    app = build_application(settings)
    app.start_background()
    try:
        app.server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        app.stop()


if __name__ == "__main__":
    main()
