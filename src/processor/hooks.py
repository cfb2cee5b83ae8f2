import logging
from typing import Protocol

import requests

from src.models.transaction import Transaction
from src.observability import audit as audit_actions
from src.observability.audit import AuditLog

logger = logging.getLogger(__name__)


class CompletionHook(Protocol):
    """Called after a deposit has been committed as COMPLETED."""

    def __call__(self, transaction: Transaction) -> None:
        ...


class BotSyncClient:
    """Notifies the chat bot backend that a user's deposit settled.

    Runs after commit; failures are logged and never reach the provider.
    """

    def __init__(self, url: str, timeout_seconds: float = 10.0, session: requests.Session | None = None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.session = session

    def __call__(self, transaction: Transaction) -> None:
        if transaction.user_id is None:
            return
        body = {
            "user_id": transaction.user_id,
            "transaction_id": transaction.id,
            "external_id": transaction.external_id,
            "amount": transaction.amount,
            "status": transaction.status.value,
        }
        try:
            resp = (self.session or requests).post(self.url, json=body, timeout=self.timeout_seconds)
            resp.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.warning("Bot sync failed for transaction %s: %s", transaction.id, e)
            return
        logger.info("Bot sync sent for transaction %s", transaction.id)


class ValidationDepositRecorder:
    """Audits completed account-validation deposits so the account can be marked verified."""

    def __init__(self, audit: AuditLog):
        self.audit = audit

    def __call__(self, transaction: Transaction) -> None:
        if not transaction.is_validation:
            return
        self.audit.record(
            audit_actions.VALIDATION_DEPOSIT_COMPLETED,
            "transaction",
            transaction.id,
            request={"user_id": transaction.user_id, "external_id": transaction.external_id},
            response={"amount": transaction.amount, "processed_at": transaction.processed_at.isoformat() if transaction.processed_at else None},
        )
        logger.info("Validation deposit %s completed for user %s", transaction.id, transaction.user_id)
