import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime

from src.utils.clock import utcnow

logger = logging.getLogger(__name__)

DEPOSIT_EVENT = "WEBHOOK_DEPOSIT_EVENT"
DEPOSIT_EVENT_ERROR = "WEBHOOK_DEPOSIT_EVENT_ERROR"
REVIEW_REQUIRED = "WEBHOOK_DEPOSIT_REVIEW_REQUIRED"
TRANSACTION_EXPIRED = "TRANSACTION_EXPIRED"
VALIDATION_DEPOSIT_COMPLETED = "ACCOUNT_VALIDATION_DEPOSIT_COMPLETED"


@dataclass
class AuditEntry:
    action: str
    resource: str
    resource_id: str | None
    request: dict = field(default_factory=dict)
    response: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


class AuditLog:
    """Thread-safe audit sink for webhook outcomes."""

    def __init__(self, max_entries: int = 10_000):
        self._entries: list[AuditEntry] = []
        self._max_entries = max_entries
        self._lock = threading.Lock()

    def record(
        self,
        action: str,
        resource: str,
        resource_id: str | None = None,
        request: dict | None = None,
        response: dict | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(action, resource, resource_id, request or {}, response or {})
        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self._max_entries:
                del self._entries[: len(self._entries) - self._max_entries]
        logger.debug("audit %s %s %s", action, resource, resource_id)
        return entry

    def entries(self, action: str | None = None) -> list[AuditEntry]:
        with self._lock:
            if action is None:
                return list(self._entries)
            return [e for e in self._entries if e.action == action]

    def pending_reviews(self) -> list[AuditEntry]:
        return self.entries(REVIEW_REQUIRED)

    def stats(self, start: datetime | None = None, end: datetime | None = None) -> dict:
        """Deposit webhook processing statistics, newest first."""
        logs = [
            e for e in self.entries()
            if e.action in (DEPOSIT_EVENT, DEPOSIT_EVENT_ERROR)
            and (start is None or e.created_at >= start)
            and (end is None or e.created_at <= end)
        ]
        logs.reverse()
        successful = sum(1 for e in logs if e.action == DEPOSIT_EVENT)
        failed = len(logs) - successful
        return {
            "total": len(logs),
            "successful": successful,
            "failed": failed,
            "success_rate": round(successful / len(logs) * 100) if logs else 0,
            "recent": [
                {
                    "action": e.action,
                    "resource_id": e.resource_id,
                    "response": e.response,
                    "created_at": e.created_at.isoformat(),
                }
                for e in logs[:10]
            ],
        }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
