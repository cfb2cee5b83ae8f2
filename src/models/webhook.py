from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from src.errors import ValidationError
from src.models.transaction import TransactionStatus


class ProviderStatus(Enum):
    """Status vocabulary used by the PIX/DePix settlement provider."""

    PENDING = "pending"
    PAID = "paid"
    DEPIX_SENT = "depix_sent"
    SENT = "sent"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @classmethod
    def parse(cls, raw: str) -> "ProviderStatus":
        try:
            return cls(raw.strip().lower())
        except ValueError:
            raise ValidationError(f"unknown provider status: {raw!r}", field="status") from None

    @property
    def target_status(self) -> TransactionStatus:
        return PROVIDER_STATUS_MAP[self]


PROVIDER_STATUS_MAP = {
    ProviderStatus.PENDING: TransactionStatus.PENDING,
    ProviderStatus.PAID: TransactionStatus.PROCESSING,
    ProviderStatus.DEPIX_SENT: TransactionStatus.COMPLETED,
    ProviderStatus.SENT: TransactionStatus.COMPLETED,
    ProviderStatus.CONFIRMED: TransactionStatus.COMPLETED,
    ProviderStatus.FAILED: TransactionStatus.FAILED,
    ProviderStatus.REJECTED: TransactionStatus.FAILED,
    ProviderStatus.CANCELLED: TransactionStatus.FAILED,
    ProviderStatus.CANCELED: TransactionStatus.FAILED,
    ProviderStatus.EXPIRED: TransactionStatus.EXPIRED,
}

# wire name -> attribute name for optional string fields
_OPTIONAL_STRINGS = {
    "bankTxId": "bank_tx_id",
    "blockchainTxID": "blockchain_tx_id",
    "payerName": "payer_name",
    "payerEUID": "payer_euid",
    "payerTaxNumber": "payer_tax_number",
    "pixKey": "pix_key",
    "customerMessage": "customer_message",
}


@dataclass
class DepositEvent:
    """Deposit notification posted by the settlement provider."""

    qr_id: str
    status: str
    provider_status: ProviderStatus
    bank_tx_id: str | None = None
    blockchain_tx_id: str | None = None
    value_in_cents: int | None = None
    payer_name: str | None = None
    payer_euid: str | None = None
    payer_tax_number: str | None = None
    pix_key: str | None = None
    customer_message: str | None = None
    expiration: datetime | None = None

    @classmethod
    def from_payload(cls, data) -> "DepositEvent":
        """Validate a decoded JSON body and build the event.

        The provider sometimes wraps the event in a ``{"response": {...}}``
        envelope; it is unwrapped first. Raises ValidationError on any
        malformed field.
        """
        if isinstance(data, dict) and isinstance(data.get("response"), dict):
            data = data["response"]
        if not isinstance(data, dict):
            raise ValidationError("payload must be a JSON object")

        missing = [name for name in ("qrId", "status") if name not in data]
        if missing:
            raise ValidationError(f"missing fields: {missing}", field=missing[0])

        qr_id = data["qrId"]
        if not isinstance(qr_id, str) or not qr_id.strip():
            raise ValidationError("qrId must be a non-empty string", field="qrId")
        status = data["status"]
        if not isinstance(status, str):
            raise ValidationError("status must be a string", field="status")

        kwargs = {}
        for wire_name, attr in _OPTIONAL_STRINGS.items():
            value = data.get(wire_name)
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{wire_name} must be a string", field=wire_name)
            kwargs[attr] = value

        value_in_cents = data.get("valueInCents")
        if value_in_cents is not None:
            # bool is an int subclass; floats would reintroduce rounding drift
            if isinstance(value_in_cents, bool) or not isinstance(value_in_cents, int):
                raise ValidationError("valueInCents must be an integer", field="valueInCents")
            if value_in_cents < 0:
                raise ValidationError("valueInCents must not be negative", field="valueInCents")

        expiration = data.get("expiration")
        if expiration is not None:
            if not isinstance(expiration, str):
                raise ValidationError("expiration must be an ISO 8601 string", field="expiration")
            try:
                expiration = datetime.fromisoformat(expiration.replace("Z", "+00:00"))
            except ValueError:
                raise ValidationError("expiration must be an ISO 8601 string", field="expiration") from None

        return cls(
            qr_id=qr_id.strip(),
            status=status,
            provider_status=ProviderStatus.parse(status),
            value_in_cents=value_in_cents,
            expiration=expiration,
            **kwargs,
        )

    def provider_metadata(self, received_at: datetime) -> dict:
        """Settlement details persisted on the transaction under ``webhookEvent``."""
        return {
            "bankTxId": self.bank_tx_id,
            "blockchainTxID": self.blockchain_tx_id,
            "customerMessage": self.customer_message,
            "payerName": self.payer_name,
            "payerEUID": self.payer_euid,
            "payerTaxNumber": self.payer_tax_number,
            "pixKey": self.pix_key,
            "expiration": self.expiration.isoformat() if self.expiration else None,
            "valueInCents": self.value_in_cents,
            "providerStatus": self.status,
            "webhookReceivedAt": received_at.isoformat(),
        }
