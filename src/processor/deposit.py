import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable

from src.errors import (
    AmountMismatchError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    WebhookError,
)
from src.models.delivery import DeliveryAttempt
from src.models.transaction import Transaction, TransactionStatus, TransactionType
from src.models.webhook import DepositEvent
from src.observability import audit as audit_actions
from src.observability.audit import AuditLog
from src.processor.hooks import CompletionHook
from src.processor.state_machine import can_transition, event_type_for
from src.replay.guard import ReplayGuard
from src.storage.base import Repository
from src.utils.clock import utcnow

logger = logging.getLogger(__name__)


class Outcome(Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNCHANGED = "unchanged"
    REPLAYED = "replayed"
    NOT_FOUND = "not_found"
    AMOUNT_MISMATCH = "amount_mismatch"
    CONFLICT = "conflict"


_OUTCOME_FOR_ERROR = {
    NotFoundError: Outcome.NOT_FOUND,
    AmountMismatchError: Outcome.AMOUNT_MISMATCH,
    ConflictError: Outcome.CONFLICT,
}


@dataclass
class DepositAcknowledgement:
    """What the provider is told about one deposit webhook."""

    external_id: str
    outcome: Outcome
    transaction_id: str | None = None
    status: TransactionStatus | None = None
    previous_status: TransactionStatus | None = None
    deliveries: int = 0
    error: dict | None = None

    @property
    def applied(self) -> bool:
        return self.outcome is Outcome.APPLIED

    @property
    def duplicate(self) -> bool:
        return self.outcome in (Outcome.DUPLICATE, Outcome.REPLAYED)

    @classmethod
    def from_error(cls, event: DepositEvent, exc: WebhookError) -> "DepositAcknowledgement":
        outcome = next(
            (o for error_type, o in _OUTCOME_FOR_ERROR.items() if isinstance(exc, error_type)),
            Outcome.CONFLICT,
        )
        return cls(
            external_id=event.qr_id,
            outcome=outcome,
            transaction_id=getattr(exc, "transaction_id", None),
            error=exc.to_dict(),
        )

    def to_dict(self) -> dict:
        return {
            "external_id": self.external_id,
            "outcome": self.outcome.value,
            "transaction_id": self.transaction_id,
            "status": self.status.value if self.status else None,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "deliveries": self.deliveries,
            "error": self.error,
        }


@dataclass
class TransitionOutcome:
    transaction: Transaction
    previous_status: TransactionStatus
    attempts: list[DeliveryAttempt] = field(default_factory=list)


class DepositWebhookProcessor:
    """Applies provider deposit events to transactions exactly once.

    Every status change goes through a conditional update on the current
    status, committed in one unit of work together with the payment-link
    counters and the outbound delivery attempts it causes. A caller that
    loses the race re-reads the transaction and lands on the duplicate or
    conflict path.

    Domain errors (not found, amount mismatch, conflict) are audited and
    then raised; the HTTP layer turns them into acknowledgements.
    """

    def __init__(
        self,
        repository: Repository,
        dispatcher,
        audit: AuditLog | None = None,
        hooks: Iterable[CompletionHook] = (),
        replay_guard: ReplayGuard | None = None,
        clock: Callable[[], datetime] = utcnow,
        max_cas_retries: int = 3,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.audit = audit or AuditLog()
        self.hooks = list(hooks)
        self.replay_guard = replay_guard
        self.max_cas_retries = max_cas_retries
        self._clock = clock

    def process_deposit_webhook(self, event: DepositEvent) -> DepositAcknowledgement:
        received_at = self._clock()

        if self.replay_guard is not None:
            cached = self.replay_guard.lookup(event, received_at)
            if cached is not None:
                logger.info("Ignoring replayed %s webhook for qrId %s", event.status, event.qr_id)
                return replace(cached, outcome=Outcome.REPLAYED, deliveries=0)

        try:
            ack = self._process(event, received_at)
        except WebhookError as exc:
            self._record_error(event, exc)
            raise
        except Exception as exc:
            self._record_error(event, exc)
            logger.exception("Unexpected error processing deposit webhook for qrId %s", event.qr_id)
            raise

        self.audit.record(
            audit_actions.DEPOSIT_EVENT,
            "transaction",
            ack.transaction_id,
            request=self._audit_request(event),
            response=ack.to_dict(),
        )
        if self.replay_guard is not None:
            self.replay_guard.remember(event, ack, received_at)
        return ack

    def _process(self, event: DepositEvent, received_at: datetime) -> DepositAcknowledgement:
        target = event.provider_status.target_status

        for _ in range(self.max_cas_retries):
            with self.repository.atomic() as uow:
                transaction = uow.transactions.find_by_external_id(event.qr_id, TransactionType.DEPOSIT)
            if transaction is None:
                raise NotFoundError(event.qr_id)

            if event.value_in_cents is not None and event.value_in_cents != transaction.amount:
                raise AmountMismatchError(transaction.id, transaction.amount, event.value_in_cents)

            if transaction.status is target:
                outcome = Outcome.DUPLICATE if target.is_terminal else Outcome.UNCHANGED
                logger.info(
                    "Transaction %s already %s; %s webhook is a no-op",
                    transaction.id, target.value, event.status,
                )
                return DepositAcknowledgement(
                    external_id=event.qr_id,
                    outcome=outcome,
                    transaction_id=transaction.id,
                    status=transaction.status,
                    previous_status=transaction.status,
                )

            if transaction.status.is_terminal:
                raise ConflictError(transaction.id, transaction.status.value, target.value)
            if not can_transition(transaction.status, target):
                raise InvalidTransitionError(transaction.id, transaction.status.value, target.value)

            result = self.apply_transition(
                transaction,
                target,
                metadata_update={"webhookEvent": event.provider_metadata(received_at)},
                error_message=f"Webhook: {event.status}" if target is TransactionStatus.FAILED else None,
            )
            if result is None:
                logger.info("Transaction %s changed concurrently; re-evaluating %s webhook", transaction.id, event.status)
                continue

            return DepositAcknowledgement(
                external_id=event.qr_id,
                outcome=Outcome.APPLIED,
                transaction_id=result.transaction.id,
                status=result.transaction.status,
                previous_status=result.previous_status,
                deliveries=len(result.attempts),
            )

        raise ConflictError(
            transaction.id,
            transaction.status.value,
            target.value,
            f"Transaction {transaction.id} kept changing while applying {target.value}",
        )

    def apply_transition(
        self,
        transaction: Transaction,
        target: TransactionStatus,
        *,
        metadata_update: dict | None = None,
        error_message: str | None = None,
    ) -> TransitionOutcome | None:
        """Move ``transaction`` from its current status to ``target``.

        Returns None when the stored status no longer matches
        ``transaction.status`` (another writer won); nothing is written then.
        """
        now = self._clock()
        fields = {
            "processed_at": now,
            "updated_at": now,
            "metadata": {**transaction.metadata, **(metadata_update or {})},
        }
        if error_message is not None:
            fields["error_message"] = error_message
        event_type = event_type_for(target)

        with self.repository.atomic() as uow:
            updated = uow.transactions.update_status(transaction.id, transaction.status, target, fields)
            if updated is None:
                return None
            if target is TransactionStatus.COMPLETED and updated.payment_link_id:
                uow.payment_links.record_payment(updated.payment_link_id, updated.id, updated.amount)
            attempts = self.dispatcher.dispatch(updated, event_type, uow) if event_type else []

        logger.info(
            "Transaction %s: %s -> %s (%d webhook delivery(ies) queued)",
            updated.id, transaction.status.value, target.value, len(attempts),
        )
        self._after_commit(updated, attempts)
        return TransitionOutcome(updated, transaction.status, attempts)

    def _after_commit(self, transaction: Transaction, attempts: list[DeliveryAttempt]) -> None:
        if transaction.status is TransactionStatus.COMPLETED:
            for hook in self.hooks:
                try:
                    hook(transaction)
                except Exception:
                    logger.exception("Completion hook %r failed for transaction %s", hook, transaction.id)
        if attempts:
            self.dispatcher.schedule(a.attempt_id for a in attempts)

    def _record_error(self, event: DepositEvent, exc: Exception) -> None:
        if isinstance(exc, WebhookError):
            response = exc.to_dict()
            transaction_id = getattr(exc, "transaction_id", None)
        else:
            response = {"error": str(exc), "code": None, "details": {}}
            transaction_id = None

        if isinstance(exc, NotFoundError):
            logger.warning("Deposit webhook for unknown qrId %s (status %s)", event.qr_id, event.status)
        elif isinstance(exc, AmountMismatchError):
            logger.error("%s; flagged for manual review", exc.message)
        elif isinstance(exc, ConflictError):
            logger.warning("Anomalous deposit webhook: %s", exc.message)

        request = self._audit_request(event)
        self.audit.record(audit_actions.DEPOSIT_EVENT_ERROR, "transaction", transaction_id, request, response)
        if isinstance(exc, AmountMismatchError):
            self.audit.record(audit_actions.REVIEW_REQUIRED, "transaction", transaction_id, request, response)

    @staticmethod
    def _audit_request(event: DepositEvent) -> dict:
        return {
            "qrId": event.qr_id,
            "status": event.status,
            "bankTxId": event.bank_tx_id,
            "blockchainTxID": event.blockchain_tx_id,
            "valueInCents": event.value_in_cents,
        }
