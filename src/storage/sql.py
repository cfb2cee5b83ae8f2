"""SQLModel-backed repository (durable transactions, subscriptions and delivery attempts)."""

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import or_, update
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select

from src.models.delivery import DeliveryAttempt, DeliveryStatus
from src.models.payment_link import PaymentLink, RetryPolicy, WebhookEventType, WebhookSubscription
from src.models.transaction import Transaction, TransactionStatus, TransactionType
from src.storage.base import TRANSITION_FIELDS
from src.utils.clock import ensure_utc


def _utc(value: datetime | None) -> datetime | None:
    """Bind timezone-aware UTC values; naive input is taken to already be UTC."""
    if value is None:
        return None
    return ensure_utc(value).astimezone(timezone.utc)


class TransactionRow(SQLModel, table=True):
    __tablename__ = "transactions"

    id: str = Field(primary_key=True, max_length=64)
    external_id: Optional[str] = Field(default=None, unique=True, index=True, max_length=128)
    type: str = Field(max_length=16)
    status: str = Field(index=True, max_length=16)
    amount: int
    payment_link_id: Optional[str] = Field(default=None, index=True, max_length=64)
    user_id: Optional[str] = Field(default=None, max_length=64)
    is_validation: bool = Field(default=False)
    error_message: Optional[str] = Field(default=None)
    metadata_json: str = Field(default="{}")
    created_at: datetime
    updated_at: Optional[datetime] = Field(default=None)
    processed_at: Optional[datetime] = Field(default=None)


class PaymentLinkRow(SQLModel, table=True):
    __tablename__ = "payment_links"

    id: str = Field(primary_key=True, max_length=64)
    user_id: Optional[str] = Field(default=None, max_length=64)
    total_payments: int = Field(default=0)
    total_amount: int = Field(default=0)
    last_payment_id: Optional[str] = Field(default=None, max_length=64)


class SubscriptionRow(SQLModel, table=True):
    __tablename__ = "payment_link_webhooks"

    id: str = Field(primary_key=True, max_length=64)
    payment_link_id: str = Field(index=True, max_length=64)
    name: str = Field(default="", max_length=128)
    url: str = Field(max_length=2048)
    secret: str = Field(max_length=256)
    events: str = Field(default="")  # comma separated event types
    active: bool = Field(default=True, index=True)
    headers_json: str = Field(default="{}")
    max_retries: int = Field(default=3)
    retry_delay_ms: int = Field(default=1000)
    failure_count: int = Field(default=0)
    last_triggered_at: Optional[datetime] = Field(default=None)


class DeliveryAttemptRow(SQLModel, table=True):
    __tablename__ = "payment_link_webhook_events"

    id: str = Field(primary_key=True, max_length=64)
    event_id: str = Field(index=True, max_length=64)
    subscription_id: str = Field(index=True, max_length=64)
    payment_link_id: str = Field(index=True, max_length=64)
    transaction_id: str = Field(index=True, max_length=64)
    event_type: str = Field(max_length=32)
    payload_json: str
    signature: str = Field(max_length=128)
    status: str = Field(index=True, max_length=16)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    response_code: Optional[int] = Field(default=None)
    response_body: Optional[str] = Field(default=None)
    error: Optional[str] = Field(default=None)
    next_retry_at: Optional[datetime] = Field(default=None, index=True)
    last_attempt_at: Optional[datetime] = Field(default=None)
    created_at: datetime


def create_db_engine(database_url: str):
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


class SqlRepository:
    def __init__(self, engine):
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str, create_tables: bool = True) -> "SqlRepository":
        repo = cls(create_db_engine(database_url))
        if create_tables:
            repo.create_tables()
        return repo

    def create_tables(self) -> None:
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def atomic(self) -> Iterator["SqlUnitOfWork"]:
        with Session(self.engine, expire_on_commit=False) as session:
            try:
                yield SqlUnitOfWork(session)
                session.commit()
            except BaseException:
                session.rollback()
                raise


class SqlUnitOfWork:
    def __init__(self, session: Session):
        self.session = session
        self.transactions = _SqlTransactionStore(session)
        self.payment_links = _SqlPaymentLinkStore(session)
        self.subscriptions = _SqlSubscriptionStore(session)
        self.attempts = _SqlAttemptStore(session)


def _execute(session: Session, statement) -> int:
    """Run a core UPDATE inside the session's transaction; returns the rowcount."""
    session.flush()
    return session.connection().execute(statement).rowcount


class _SqlTransactionStore:
    def __init__(self, session: Session):
        self.session = session

    def add(self, transaction: Transaction) -> Transaction:
        self.session.add(_transaction_row(transaction))
        self.session.flush()
        return self.find_by_id(transaction.id)

    def find_by_id(self, transaction_id: str) -> Transaction | None:
        row = self.session.get(TransactionRow, transaction_id, populate_existing=True)
        return _transaction(row) if row else None

    def find_by_external_id(self, external_id: str, type: TransactionType = TransactionType.DEPOSIT) -> Transaction | None:
        row = self.session.exec(
            select(TransactionRow)
            .where(
                TransactionRow.external_id == external_id,
                TransactionRow.type == type.value,
            )
            .execution_options(populate_existing=True)
        ).first()
        return _transaction(row) if row else None

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
        values = {"status": new.value}
        for key, value in fields.items():
            if key == "metadata":
                values["metadata_json"] = json.dumps(value, default=str)
            elif key in ("processed_at", "updated_at"):
                values[key] = _utc(value)
            else:
                values[key] = value
        statement = (
            update(TransactionRow)
            .where(TransactionRow.id == transaction_id, TransactionRow.status == expected.value)
            .values(**values)
        )
        if _execute(self.session, statement) != 1:
            return None
        return self.find_by_id(transaction_id)

    def list_stale_pending(self, cutoff: datetime, limit: int) -> list[Transaction]:
        rows = self.session.exec(
            select(TransactionRow)
            .where(
                TransactionRow.status == TransactionStatus.PENDING.value,
                TransactionRow.type == TransactionType.DEPOSIT.value,
                TransactionRow.created_at < _utc(cutoff),
            )
            .order_by(TransactionRow.created_at)
            .limit(limit)
        ).all()
        return [_transaction(row) for row in rows]


class _SqlPaymentLinkStore:
    def __init__(self, session: Session):
        self.session = session

    def add(self, link: PaymentLink) -> PaymentLink:
        self.session.add(PaymentLinkRow(
            id=link.id,
            user_id=link.user_id,
            total_payments=link.total_payments,
            total_amount=link.total_amount,
            last_payment_id=link.last_payment_id,
        ))
        self.session.flush()
        return self.get(link.id)

    def get(self, payment_link_id: str) -> PaymentLink | None:
        row = self.session.get(PaymentLinkRow, payment_link_id, populate_existing=True)
        if row is None:
            return None
        return PaymentLink(
            id=row.id,
            user_id=row.user_id,
            total_payments=row.total_payments,
            total_amount=row.total_amount,
            last_payment_id=row.last_payment_id,
        )

    def record_payment(self, payment_link_id: str, transaction_id: str, amount: int) -> PaymentLink | None:
        statement = (
            update(PaymentLinkRow)
            .where(PaymentLinkRow.id == payment_link_id)
            .values(
                total_payments=PaymentLinkRow.total_payments + 1,
                total_amount=PaymentLinkRow.total_amount + amount,
                last_payment_id=transaction_id,
            )
        )
        if _execute(self.session, statement) != 1:
            return None
        return self.get(payment_link_id)


class _SqlSubscriptionStore:
    def __init__(self, session: Session):
        self.session = session

    def add(self, subscription: WebhookSubscription) -> WebhookSubscription:
        self.session.add(SubscriptionRow(
            id=subscription.id,
            payment_link_id=subscription.payment_link_id,
            name=subscription.name,
            url=subscription.url,
            secret=subscription.secret,
            events=",".join(sorted(e.value for e in subscription.events)),
            active=subscription.active,
            headers_json=json.dumps(subscription.headers),
            max_retries=subscription.retry_policy.max_retries,
            retry_delay_ms=subscription.retry_policy.retry_delay_ms,
            failure_count=subscription.failure_count,
            last_triggered_at=_utc(subscription.last_triggered_at),
        ))
        self.session.flush()
        return self.get(subscription.id)

    def get(self, subscription_id: str) -> WebhookSubscription | None:
        row = self.session.get(SubscriptionRow, subscription_id, populate_existing=True)
        return _subscription(row) if row else None

    def list_active_for_payment_link(self, payment_link_id: str, event_type: WebhookEventType) -> list[WebhookSubscription]:
        rows = self.session.exec(
            select(SubscriptionRow).where(
                SubscriptionRow.payment_link_id == payment_link_id,
                SubscriptionRow.active == True,  # noqa: E712
            )
        ).all()
        subscriptions = [_subscription(row) for row in rows]
        return [s for s in subscriptions if s.is_subscribed(event_type)]

    def set_active(self, subscription_id: str, active: bool) -> WebhookSubscription | None:
        statement = update(SubscriptionRow).where(SubscriptionRow.id == subscription_id).values(active=active)
        if _execute(self.session, statement) != 1:
            return None
        return self.get(subscription_id)

    def record_outcome(self, subscription_id: str, success: bool, at: datetime) -> None:
        if success:
            values = {"last_triggered_at": _utc(at), "failure_count": 0}
        else:
            values = {"failure_count": SubscriptionRow.failure_count + 1}
        _execute(self.session, update(SubscriptionRow).where(SubscriptionRow.id == subscription_id).values(**values))


class _SqlAttemptStore:
    def __init__(self, session: Session):
        self.session = session

    def create(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        self.session.add(DeliveryAttemptRow(
            id=attempt.attempt_id,
            event_id=attempt.event_id,
            subscription_id=attempt.subscription_id,
            payment_link_id=attempt.payment_link_id,
            transaction_id=attempt.transaction_id,
            event_type=attempt.event_type.value,
            payload_json=json.dumps(attempt.payload, default=str),
            signature=attempt.signature,
            status=attempt.status.value,
            attempts=attempt.attempts,
            max_attempts=attempt.max_attempts,
            response_code=attempt.response_code,
            response_body=attempt.response_body,
            error=attempt.error,
            next_retry_at=_utc(attempt.next_retry_at),
            last_attempt_at=_utc(attempt.last_attempt_at),
            created_at=_utc(attempt.created_at),
        ))
        self.session.flush()
        return self.get(attempt.attempt_id)

    def get(self, attempt_id: str) -> DeliveryAttempt | None:
        row = self.session.get(DeliveryAttemptRow, attempt_id, populate_existing=True)
        return _attempt(row) if row else None

    def claim(self, attempt_id: str, now: datetime, lease_until: datetime) -> DeliveryAttempt | None:
        statement = (
            update(DeliveryAttemptRow)
            .where(DeliveryAttemptRow.id == attempt_id, *_due_clause(now))
            .values(next_retry_at=_utc(lease_until))
        )
        if _execute(self.session, statement) != 1:
            return None
        return self.get(attempt_id)

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
        statement = (
            update(DeliveryAttemptRow)
            .where(DeliveryAttemptRow.id == attempt_id)
            .values(
                status=status.value,
                attempts=attempts,
                response_code=response_code,
                response_body=response_body,
                next_retry_at=_utc(next_retry_at),
                last_attempt_at=_utc(last_attempt_at),
                error=error,
            )
        )
        if _execute(self.session, statement) != 1:
            raise KeyError(attempt_id)
        return self.get(attempt_id)

    def list_due(self, now: datetime, limit: int) -> list[DeliveryAttempt]:
        rows = self.session.exec(
            select(DeliveryAttemptRow)
            .where(*_due_clause(now))
            .order_by(DeliveryAttemptRow.next_retry_at, DeliveryAttemptRow.created_at)
            .limit(limit)
        ).all()
        return [_attempt(row) for row in rows]

    def list_for_transaction(self, transaction_id: str) -> list[DeliveryAttempt]:
        rows = self.session.exec(
            select(DeliveryAttemptRow)
            .where(DeliveryAttemptRow.transaction_id == transaction_id)
            .order_by(DeliveryAttemptRow.created_at)
        ).all()
        return [_attempt(row) for row in rows]


def _due_clause(now: datetime) -> tuple:
    return (
        DeliveryAttemptRow.status == DeliveryStatus.PENDING.value,
        DeliveryAttemptRow.attempts < DeliveryAttemptRow.max_attempts,
        or_(DeliveryAttemptRow.next_retry_at.is_(None), DeliveryAttemptRow.next_retry_at <= _utc(now)),
    )


def _transaction_row(transaction: Transaction) -> TransactionRow:
    return TransactionRow(
        id=transaction.id,
        external_id=transaction.external_id,
        type=transaction.type.value,
        status=transaction.status.value,
        amount=transaction.amount,
        payment_link_id=transaction.payment_link_id,
        user_id=transaction.user_id,
        is_validation=transaction.is_validation,
        error_message=transaction.error_message,
        metadata_json=json.dumps(transaction.metadata, default=str),
        created_at=_utc(transaction.created_at),
        updated_at=_utc(transaction.updated_at),
        processed_at=_utc(transaction.processed_at),
    )


def _transaction(row: TransactionRow) -> Transaction:
    return Transaction(
        id=row.id,
        external_id=row.external_id,
        type=TransactionType(row.type),
        status=TransactionStatus(row.status),
        amount=row.amount,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
        processed_at=ensure_utc(row.processed_at),
        payment_link_id=row.payment_link_id,
        user_id=row.user_id,
        is_validation=row.is_validation,
        error_message=row.error_message,
        metadata=json.loads(row.metadata_json or "{}"),
    )


def _subscription(row: SubscriptionRow) -> WebhookSubscription:
    return WebhookSubscription(
        id=row.id,
        payment_link_id=row.payment_link_id,
        url=row.url,
        secret=row.secret,
        events=frozenset(WebhookEventType(v) for v in row.events.split(",") if v),
        name=row.name,
        active=row.active,
        headers=json.loads(row.headers_json or "{}"),
        retry_policy=RetryPolicy(max_retries=row.max_retries, retry_delay_ms=row.retry_delay_ms),
        failure_count=row.failure_count,
        last_triggered_at=ensure_utc(row.last_triggered_at),
    )


def _attempt(row: DeliveryAttemptRow) -> DeliveryAttempt:
    return DeliveryAttempt(
        attempt_id=row.id,
        event_id=row.event_id,
        subscription_id=row.subscription_id,
        payment_link_id=row.payment_link_id,
        transaction_id=row.transaction_id,
        event_type=WebhookEventType(row.event_type),
        payload=json.loads(row.payload_json),
        signature=row.signature,
        created_at=ensure_utc(row.created_at),
        status=DeliveryStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        response_code=row.response_code,
        response_body=row.response_body,
        next_retry_at=ensure_utc(row.next_retry_at),
        last_attempt_at=ensure_utc(row.last_attempt_at),
        error=row.error,
    )
