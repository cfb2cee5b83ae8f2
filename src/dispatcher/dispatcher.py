import logging
import uuid
from concurrent.futures import Executor
from datetime import datetime, timedelta
from typing import Callable, Iterable

from src.dispatcher.engine import WebhookDeliveryEngine
from src.dispatcher.retry import RetryManager
from src.dispatcher.signer import SIGNATURE_HEADER, WebhookSigner
from src.errors import DeliveryError
from src.models.delivery import DeliveryAttempt, DeliveryStatus
from src.models.payment_link import WebhookEventType, WebhookSubscription
from src.models.transaction import Transaction
from src.observability.metrics import MetricsCollector
from src.storage.base import Repository, UnitOfWork
from src.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Subscriber custom headers may not override these.
RESERVED_HEADERS = frozenset({
    "content-type",
    SIGNATURE_HEADER.lower(),
    "x-event-id",
    "x-event-type",
    "x-webhook-timestamp",
})


def build_payload(event_type: WebhookEventType, transaction: Transaction, timestamp: datetime) -> dict:
    return {
        "event": event_type.value,
        "transaction": transaction.summary(),
        "timestamp": timestamp.isoformat(),
    }


class PaymentLinkWebhookDispatcher:
    """Fans transaction events out to the active webhooks of a payment link.

    Attempts are persisted with a due time and delivered afterwards, either
    through ``schedule`` right after the triggering commit or by the sweeper.
    Delivery problems are recorded on the attempt and never propagate.
    """

    def __init__(
        self,
        repository: Repository,
        engine: WebhookDeliveryEngine,
        retry_manager: RetryManager,
        metrics: MetricsCollector | None = None,
        executor: Executor | None = None,
        clock: Callable[[], datetime] = utcnow,
        lease_seconds: float = 60.0,
    ):
        self.repository = repository
        self.engine = engine
        self.retry_manager = retry_manager
        self.metrics = metrics
        self.executor = executor
        self.lease_seconds = lease_seconds
        self._clock = clock

    def dispatch(
        self,
        transaction: Transaction,
        event_type: WebhookEventType,
        uow: UnitOfWork | None = None,
    ) -> list[DeliveryAttempt]:
        """Create one PENDING attempt per active subscription to ``event_type``.

        Pass the caller's unit of work so the attempts commit together with
        the transaction update that triggered them.
        """
        if uow is None:
            with self.repository.atomic() as own:
                return self.dispatch(transaction, event_type, own)

        if transaction.payment_link_id is None:
            return []

        subscriptions = uow.subscriptions.list_active_for_payment_link(transaction.payment_link_id, event_type)
        now = self._clock()
        created = []
        for subscription in subscriptions:
            payload = build_payload(event_type, transaction, now)
            attempt = DeliveryAttempt(
                attempt_id=f"att_{uuid.uuid4().hex[:16]}",
                event_id=f"evt_{uuid.uuid4().hex[:16]}",
                subscription_id=subscription.id,
                payment_link_id=transaction.payment_link_id,
                transaction_id=transaction.id,
                event_type=event_type,
                payload=payload,
                signature=WebhookSigner(subscription.secret).sign(payload),
                created_at=now,
                max_attempts=subscription.retry_policy.max_attempts,
                next_retry_at=now,
            )
            created.append(uow.attempts.create(attempt))

        if created:
            logger.info(
                "Queued %d %s webhook(s) for payment link %s (transaction %s)",
                len(created), event_type.value, transaction.payment_link_id, transaction.id,
            )
        return created

    def schedule(self, attempt_ids: Iterable[str]) -> None:
        """Hand attempts off for delivery; failures here only delay them until the next sweep."""
        for attempt_id in attempt_ids:
            try:
                if self.executor is None:
                    self._deliver_safely(attempt_id)
                else:
                    self.executor.submit(self._deliver_safely, attempt_id)
            except Exception:
                logger.exception("Could not schedule delivery %s; leaving it for the sweeper", attempt_id)

    def _deliver_safely(self, attempt_id: str) -> None:
        try:
            self.deliver(attempt_id)
        except Exception:
            logger.exception("Delivery %s crashed; it stays PENDING for the sweeper", attempt_id)

    def deliver(self, attempt_id: str, now: datetime | None = None) -> DeliveryAttempt | None:
        """Deliver one due attempt. Returns the updated attempt, or None if it was not claimable."""
        now = now or self._clock()
        with self.repository.atomic() as uow:
            attempt = uow.attempts.claim(attempt_id, now, now + timedelta(seconds=self.lease_seconds))
            if attempt is None:
                return None
            subscription = uow.subscriptions.get(attempt.subscription_id)
            if subscription is None or not subscription.active:
                logger.info("Cancelling delivery %s: subscription %s is inactive", attempt_id, attempt.subscription_id)
                return uow.attempts.mark_result(
                    attempt_id,
                    DeliveryStatus.CANCELLED,
                    attempts=attempt.attempts,
                    response_code=attempt.response_code,
                    response_body=attempt.response_body,
                    next_retry_at=None,
                    last_attempt_at=attempt.last_attempt_at,
                    error="subscription inactive",
                )

        # The HTTP call runs outside any unit of work.
        try:
            result = self._send(attempt, subscription, now)
        except DeliveryError as exc:
            return self._record_failure(attempt, subscription, exc, now)
        return self._record_success(attempt, subscription, result.status_code, result.response_body, now)

    def _send(self, attempt: DeliveryAttempt, subscription: WebhookSubscription, now: datetime):
        result = self.engine.post(subscription.url, attempt.body, self._headers(attempt, subscription, now))
        if self.retry_manager.should_retry(result.status_code):
            reason = result.error or f"HTTP {result.status_code}"
            raise DeliveryError(attempt.attempt_id, reason, result.status_code, result.response_body)
        return result

    def _headers(self, attempt: DeliveryAttempt, subscription: WebhookSubscription, now: datetime) -> dict[str, str]:
        headers = {
            name: value for name, value in subscription.headers.items()
            if name.lower() not in RESERVED_HEADERS
        }
        headers.update({
            "Content-Type": "application/json",
            SIGNATURE_HEADER: attempt.signature,
            "X-Event-ID": attempt.event_id,
            "X-Event-Type": attempt.event_type.value,
            "X-Webhook-Timestamp": str(int(now.timestamp() * 1000)),
        })
        return headers

    def _record_success(self, attempt, subscription, status_code, response_body, now) -> DeliveryAttempt:
        with self.repository.atomic() as uow:
            updated = uow.attempts.mark_result(
                attempt.attempt_id,
                DeliveryStatus.SUCCESS,
                attempts=attempt.attempts + 1,
                response_code=status_code,
                response_body=response_body,
                next_retry_at=None,
                last_attempt_at=now,
            )
            uow.subscriptions.record_outcome(subscription.id, True, now)
        if self.metrics:
            self.metrics.record_success(attempt.event_type.value)
        logger.info("Delivered %s %s to %s (HTTP %s)", attempt.event_type.value, attempt.attempt_id, subscription.url, status_code)
        return updated

    def _record_failure(self, attempt, subscription, error: DeliveryError, now) -> DeliveryAttempt:
        attempts = attempt.attempts + 1
        with self.repository.atomic() as uow:
            current = uow.subscriptions.get(subscription.id)
            next_retry_at = self.retry_manager.next_retry_at(
                subscription.retry_policy, attempts, attempt.max_attempts, now,
            )
            if current is None or not current.active:
                status, next_retry_at = DeliveryStatus.CANCELLED, None
            elif next_retry_at is None:
                status = DeliveryStatus.FAILED
            else:
                status = DeliveryStatus.PENDING
            updated = uow.attempts.mark_result(
                attempt.attempt_id,
                status,
                attempts=attempts,
                response_code=error.status_code,
                response_body=error.response_body,
                next_retry_at=next_retry_at,
                last_attempt_at=now,
                error=error.reason,
            )
            uow.subscriptions.record_outcome(subscription.id, False, now)
        if self.metrics:
            self.metrics.record_failure(attempt.event_type.value)

        if status is DeliveryStatus.PENDING:
            logger.warning(
                "%s (attempt %d/%d); retrying at %s",
                error, attempts, attempt.max_attempts, next_retry_at.isoformat(),
            )
        else:
            logger.error("%s (attempt %d/%d); giving up with status %s", error, attempts, attempt.max_attempts, status.value)
        return updated

    def deliver_due(self, now: datetime | None = None, limit: int = 50) -> list[DeliveryAttempt]:
        """Deliver every attempt whose due time has passed (the sweeper contract)."""
        now = now or self._clock()
        with self.repository.atomic() as uow:
            due = uow.attempts.list_due(now, limit)
        delivered = []
        for attempt in due:
            try:
                updated = self.deliver(attempt.attempt_id, now)
            except Exception:
                logger.exception("Sweeper failed to deliver %s", attempt.attempt_id)
                continue
            if updated is not None:
                delivered.append(updated)
        return delivered

    def send_test_event(
        self,
        subscription_id: str,
        event_type: WebhookEventType = WebhookEventType.COMPLETED,
    ) -> dict:
        """Send a signed sample event once, without recording an attempt."""
        with self.repository.atomic() as uow:
            subscription = uow.subscriptions.get(subscription_id)
        if subscription is None:
            return {"success": False, "status_code": None, "error": f"subscription {subscription_id} not found"}

        now = self._clock()
        payload = {
            "event": event_type.value,
            "transaction": {
                "id": "test_payment_123",
                "external_id": None,
                "type": "DEPOSIT",
                "status": "COMPLETED",
                "amount": 10000,
                "currency": "BRL",
                "payment_link_id": subscription.payment_link_id,
                "is_validation": False,
                "processed_at": now.isoformat(),
            },
            "timestamp": now.isoformat(),
            "test": True,
        }
        test_attempt = DeliveryAttempt(
            attempt_id=f"test_{uuid.uuid4().hex[:12]}",
            event_id=f"evt_test_{uuid.uuid4().hex[:12]}",
            subscription_id=subscription.id,
            payment_link_id=subscription.payment_link_id,
            transaction_id="test_payment_123",
            event_type=event_type,
            payload=payload,
            signature=WebhookSigner(subscription.secret).sign(payload),
            created_at=now,
        )
        try:
            result = self._send(test_attempt, subscription, now)
        except DeliveryError as exc:
            return {"success": False, "status_code": exc.status_code, "error": exc.reason}
        return {"success": True, "status_code": result.status_code, "error": None}
