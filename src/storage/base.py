"""Storage contracts consumed by the processor and the dispatcher.

A repository hands out units of work through ``atomic()``; everything done
through one unit of work is committed together or not at all.
"""

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Protocol

from src.models.delivery import DeliveryAttempt, DeliveryStatus
from src.models.payment_link import PaymentLink, WebhookEventType, WebhookSubscription
from src.models.transaction import Transaction, TransactionStatus, TransactionType

# Columns update_status() may write besides status.
TRANSITION_FIELDS = frozenset({"processed_at", "updated_at", "metadata", "error_message"})


class TransactionStore(Protocol):

    def add(self, transaction: Transaction) -> Transaction:
        ...

    def find_by_id(self, transaction_id: str) -> Transaction | None:
        ...

    def find_by_external_id(
        self,
        external_id: str,
        type: TransactionType = TransactionType.DEPOSIT,
    ) -> Transaction | None:
        ...

    def update_status(
        self,
        transaction_id: str,
        expected: TransactionStatus,
        new: TransactionStatus,
        fields: dict,
    ) -> Transaction | None:
        """Compare-and-swap: apply only while status still equals ``expected``.

        Returns the updated transaction, or None when the stored status moved.
        """
        ...

    def list_stale_pending(self, cutoff: datetime, limit: int) -> list[Transaction]:
        ...


class PaymentLinkStore(Protocol):

    def add(self, link: PaymentLink) -> PaymentLink:
        ...

    def get(self, payment_link_id: str) -> PaymentLink | None:
        ...

    def record_payment(self, payment_link_id: str, transaction_id: str, amount: int) -> PaymentLink | None:
        ...


class SubscriptionStore(Protocol):

    def add(self, subscription: WebhookSubscription) -> WebhookSubscription:
        ...

    def get(self, subscription_id: str) -> WebhookSubscription | None:
        ...

    def list_active_for_payment_link(
        self,
        payment_link_id: str,
        event_type: WebhookEventType,
    ) -> list[WebhookSubscription]:
        ...

    def set_active(self, subscription_id: str, active: bool) -> WebhookSubscription | None:
        ...

    def record_outcome(self, subscription_id: str, success: bool, at: datetime) -> None:
        ...


class DeliveryAttemptStore(Protocol):

    def create(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        ...

    def get(self, attempt_id: str) -> DeliveryAttempt | None:
        ...

    def claim(self, attempt_id: str, now: datetime, lease_until: datetime) -> DeliveryAttempt | None:
        """Lease a due PENDING attempt by pushing its next_retry_at forward.

        Returns None if the attempt is terminal, exhausted, not yet due, or
        already leased by another worker.
        """
        ...

    def mark_result(
        self,
        attempt_id: str,
        status: DeliveryStatus,
        *,
        attempts: int,
        response_code: int | None,
        response_body: str | None,
        next_retry_at: datetime | None,
        last_attempt_at: datetime | None,
        error: str | None = None,
    ) -> DeliveryAttempt:
        ...

    def list_due(self, now: datetime, limit: int) -> list[DeliveryAttempt]:
        ...

    def list_for_transaction(self, transaction_id: str) -> list[DeliveryAttempt]:
        ...


class UnitOfWork(Protocol):
    transactions: TransactionStore
    payment_links: PaymentLinkStore
    subscriptions: SubscriptionStore
    attempts: DeliveryAttemptStore


class Repository(Protocol):

    def atomic(self) -> AbstractContextManager[UnitOfWork]:
        ...
