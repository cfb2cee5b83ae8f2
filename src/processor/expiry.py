import logging
from datetime import datetime, timedelta
from typing import Callable

from src.models.transaction import Transaction, TransactionStatus
from src.observability import audit as audit_actions
from src.observability.audit import AuditLog
from src.utils.clock import utcnow

logger = logging.getLogger(__name__)

EXPIRED_MESSAGE = "Transaction expired after timeout"


class TransactionExpiryService:
    """Expires PENDING deposits the provider never settled.

    Uses the processor's conditional transition, so a webhook arriving at the
    same moment either wins (and the expiry is skipped) or loses cleanly.
    """

    def __init__(
        self,
        repository,
        processor,
        timeout_seconds: float = 29 * 60 + 50,
        batch_size: int = 100,
        audit: AuditLog | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.processor = processor
        self.timeout = timedelta(seconds=timeout_seconds)
        self.batch_size = batch_size
        self.audit = audit
        self._clock = clock

    def expire_stale(self, now: datetime | None = None) -> list[Transaction]:
        now = now or self._clock()
        cutoff = now - self.timeout
        with self.repository.atomic() as uow:
            stale = uow.transactions.list_stale_pending(cutoff, self.batch_size)

        expired = []
        for transaction in stale:
            result = self.processor.apply_transition(
                transaction,
                TransactionStatus.EXPIRED,
                error_message=EXPIRED_MESSAGE,
            )
            if result is None:
                logger.info("Transaction %s changed before it could expire; skipping", transaction.id)
                continue
            if self.audit is not None:
                self.audit.record(
                    audit_actions.TRANSACTION_EXPIRED,
                    "transaction",
                    transaction.id,
                    request={"created_at": transaction.created_at.isoformat(), "cutoff": cutoff.isoformat()},
                    response={"status": TransactionStatus.EXPIRED.value},
                )
            expired.append(result.transaction)

        if expired:
            logger.info("Expired %d stale pending deposit(s)", len(expired))
        return expired
