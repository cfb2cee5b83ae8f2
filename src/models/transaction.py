from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TransactionType(Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    TRANSFER = "TRANSFER"


class TransactionStatus(Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
    TransactionStatus.EXPIRED,
})


@dataclass
class Transaction:
    id: str
    external_id: str | None
    type: TransactionType
    status: TransactionStatus
    amount: int  # minor units (centavos)
    created_at: datetime
    updated_at: datetime | None = None
    processed_at: datetime | None = None
    payment_link_id: str | None = None
    user_id: str | None = None
    is_validation: bool = False
    error_message: str | None = None
    metadata: dict = field(default_factory=dict)

    def summary(self) -> dict:
        """Transaction fields exposed to downstream webhook subscribers."""
        return {
            "id": self.id,
            "external_id": self.external_id,
            "type": self.type.value,
            "status": self.status.value,
            "amount": self.amount,
            "currency": "BRL",
            "payment_link_id": self.payment_link_id,
            "is_validation": self.is_validation,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
