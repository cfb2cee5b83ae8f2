import copy
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Iterator

from src.models.delivery import DeliveryAttempt, DeliveryStatus
from src.models.payment_link import PaymentLink, WebhookEventType, WebhookSubscription
from src.models.transaction import Transaction, TransactionStatus, TransactionType
from src.storage.base import TRANSITION_FIELDS


class InMemoryRepository:
    """Thread-safe in-process repository.

    One re-entrant lock serializes units of work. Stored objects are never
    mutated in place, so a shallow copy of each table is enough to roll back.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._transactions: dict[str, Transaction] = {}
        self._payment_links: dict[str, PaymentLink] = {}
        self._subscriptions: dict[str, WebhookSubscription] = {}
        self._attempts: dict[str, DeliveryAttempt] = {}

    @contextmanager
    def atomic(self) -> Iterator["_MemoryUnitOfWork"]:
        with self._lock:
            snapshot = (
                dict(self._transactions),
                dict(self._payment_links),
                dict(self._subscriptions),
                dict(self._attempts),
            )
            try:
                yield _MemoryUnitOfWork(self)
            except BaseException:
                (
                    self._transactions,
                    self._payment_links,
                    self._subscriptions,
                    self._attempts,
                ) = snapshot
                raise


class _MemoryUnitOfWork:
    def __init__(self, repo: InMemoryRepository):
        self.transactions = _TransactionTable(repo)
        self.payment_links = _PaymentLinkTable(repo)
        self.subscriptions = _SubscriptionTable(repo)
        self.attempts = _AttemptTable(repo)


class _TransactionTable:
    def __init__(self, repo: InMemoryRepository):
        self._repo = repo

    def add(self, transaction: Transaction) -> Transaction:
        rows = self._repo._transactions
        if transaction.id in rows:
            raise ValueError(f"Transaction {transaction.id} already exists")
        if transaction.external_id is not None and any(
            t.external_id == transaction.external_id for t in rows.values()
        ):
            raise ValueError(f"External id {transaction.external_id} already in use")
        rows[transaction.id] = copy.deepcopy(transaction)
        return copy.deepcopy(transaction)

    def find_by_id(self, transaction_id: str) -> Transaction | None:
        found = self._repo._transactions.get(transaction_id)
        return copy.deepcopy(found) if found else None

    def find_by_external_id(self, external_id: str, type: TransactionType = TransactionType.DEPOSIT) -> Transaction | None:
        for transaction in self._repo._transactions.values():
            if transaction.external_id == external_id and transaction.type is type:
                return copy.deepcopy(transaction)
        return None

    def update_status(
        self,
        transaction_id: str,
        expected: TransactionStatus,
        new: TransactionStatus,
        fields: dict,
    ) -> Transaction | None:
        unknown = set(fields) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"update_status cannot write {sorted(unknown)}")
        current = self._repo._transactions.get(transaction_id)
        if current is None or current.status is not expected:
            return None
        updated = replace(current, status=new, **copy.deepcopy(fields))
        self._repo._transactions[transaction_id] = updated
        return copy.deepcopy(updated)

    def list_stale_pending(self, cutoff: datetime, limit: int) -> list[Transaction]:
        stale = [
            t for t in self._repo._transactions.values()
            if t.status is TransactionStatus.PENDING
            and t.type is TransactionType.DEPOSIT
            and t.created_at < cutoff
        ]
        stale.sort(key=lambda t: t.created_at)
        return [copy.deepcopy(t) for t in stale[:limit]]


class _PaymentLinkTable:
    def __init__(self, repo: InMemoryRepository):
        self._repo = repo

    def add(self, link: PaymentLink) -> PaymentLink:
        self._repo._payment_links[link.id] = replace(link)
        return replace(link)

    def get(self, payment_link_id: str) -> PaymentLink | None:
        found = self._repo._payment_links.get(payment_link_id)
        return replace(found) if found else None

    def record_payment(self, payment_link_id: str, transaction_id: str, amount: int) -> PaymentLink | None:
        link = self._repo._payment_links.get(payment_link_id)
        if link is None:
            return None
        updated = replace(
            link,
            total_payments=link.total_payments + 1,
            total_amount=link.total_amount + amount,
            last_payment_id=transaction_id,
        )
        self._repo._payment_links[payment_link_id] = updated
        return replace(updated)


class _SubscriptionTable:
    def __init__(self, repo: InMemoryRepository):
        self._repo = repo

    def add(self, subscription: WebhookSubscription) -> WebhookSubscription:
        self._repo._subscriptions[subscription.id] = copy.deepcopy(subscription)
        return copy.deepcopy(subscription)

    def get(self, subscription_id: str) -> WebhookSubscription | None:
        found = self._repo._subscriptions.get(subscription_id)
        return copy.deepcopy(found) if found else None

    def list_active_for_payment_link(self, payment_link_id: str, event_type: WebhookEventType) -> list[WebhookSubscription]:
        return [
            copy.deepcopy(s) for s in self._repo._subscriptions.values()
            if s.payment_link_id == payment_link_id and s.is_subscribed(event_type)
        ]

    def set_active(self, subscription_id: str, active: bool) -> WebhookSubscription | None:
        current = self._repo._subscriptions.get(subscription_id)
        if current is None:
            return None
        updated = replace(current, active=active)
        self._repo._subscriptions[subscription_id] = updated
        return copy.deepcopy(updated)

    def record_outcome(self, subscription_id: str, success: bool, at: datetime) -> None:
        current = self._repo._subscriptions.get(subscription_id)
        if current is None:
            return
        if success:
            updated = replace(current, last_triggered_at=at, failure_count=0)
        else:
            updated = replace(current, failure_count=current.failure_count + 1)
        self._repo._subscriptions[subscription_id] = updated


class _AttemptTable:
    def __init__(self, repo: InMemoryRepository):
        self._repo = repo

    def create(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        self._repo._attempts[attempt.attempt_id] = copy.deepcopy(attempt)
        return copy.deepcopy(attempt)

    def get(self, attempt_id: str) -> DeliveryAttempt | None:
        found = self._repo._attempts.get(attempt_id)
        return copy.deepcopy(found) if found else None

    def claim(self, attempt_id: str, now: datetime, lease_until: datetime) -> DeliveryAttempt | None:
        attempt = self._repo._attempts.get(attempt_id)
        if attempt is None or not _is_due(attempt, now):
            return None
        leased = replace(attempt, next_retry_at=lease_until)
        self._repo._attempts[attempt_id] = leased
        return copy.deepcopy(leased)

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
        current = self._repo._attempts[attempt_id]
        updated = replace(
            current,
            status=status,
            attempts=attempts,
            response_code=response_code,
            response_body=response_body,
            next_retry_at=next_retry_at,
            last_attempt_at=last_attempt_at,
            error=error,
        )
        self._repo._attempts[attempt_id] = updated
        return copy.deepcopy(updated)

    def list_due(self, now: datetime, limit: int) -> list[DeliveryAttempt]:
        due = [a for a in self._repo._attempts.values() if _is_due(a, now)]
        due.sort(key=lambda a: (a.next_retry_at or a.created_at, a.created_at))
        return [copy.deepcopy(a) for a in due[:limit]]

    def list_for_transaction(self, transaction_id: str) -> list[DeliveryAttempt]:
        found = [a for a in self._repo._attempts.values() if a.transaction_id == transaction_id]
        found.sort(key=lambda a: a.created_at)
        return [copy.deepcopy(a) for a in found]


def _is_due(attempt: DeliveryAttempt, now: datetime) -> bool:
    return (
        attempt.status is DeliveryStatus.PENDING
        and attempt.attempts < attempt.max_attempts
        and (attempt.next_retry_at is None or attempt.next_retry_at <= now)
    )
