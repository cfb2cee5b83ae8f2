"""Error taxonomy for deposit webhook processing and payment-link delivery.

Codes follow the pattern WHK<number>:
- WHK400: malformed inbound payload (rejected at the HTTP boundary)
- WHK401: provider authentication failure
- WHK404: unknown external id (acknowledged, no mutation)
- WHK409: state-machine conflict (acknowledged, no mutation)
- WHK422: amount mismatch (acknowledged, flagged for manual review)
- WHK502: outbound delivery failure (recorded on the delivery attempt)
"""

from typing import Any


class WebhookError(Exception):
    """Base class for every error raised by this package."""

    code = "WHK000"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class ValidationError(WebhookError):
    """Inbound payload is malformed or uses an unknown provider status."""

    code = "WHK400"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message, {"field": field} if field else None)
        self.field = field


class AuthenticationError(WebhookError):
    code = "WHK401"


class NotFoundError(WebhookError):
    """No deposit transaction matches the provider's external id."""

    code = "WHK404"

    def __init__(self, external_id: str):
        super().__init__(
            f"Transaction not found for qrId: {external_id}",
            {"external_id": external_id},
        )
        self.external_id = external_id


class AmountMismatchError(WebhookError):
    code = "WHK422"

    def __init__(self, transaction_id: str, expected: int, received: int):
        super().__init__(
            f"Amount mismatch for transaction {transaction_id}: "
            f"expected {expected}, received {received}",
            {"transaction_id": transaction_id, "expected": expected, "received": received},
        )
        self.transaction_id = transaction_id
        self.expected = expected
        self.received = received


class ConflictError(WebhookError):
    """Requested status cannot be applied to a transaction in a terminal state."""

    code = "WHK409"

    def __init__(self, transaction_id: str, current: str, requested: str, message: str | None = None):
        super().__init__(
            message or f"Transaction {transaction_id} is {current}; refusing transition to {requested}",
            {"transaction_id": transaction_id, "current": current, "requested": requested},
        )
        self.transaction_id = transaction_id
        self.current = current
        self.requested = requested


class InvalidTransitionError(ConflictError):
    """Requested status is not reachable from the current non-terminal status."""

    def __init__(self, transaction_id: str, current: str, requested: str):
        super().__init__(
            transaction_id,
            current,
            requested,
            f"Transition {current} -> {requested} is not allowed for transaction {transaction_id}",
        )


class DeliveryError(WebhookError):
    code = "WHK502"

    def __init__(
        self,
        attempt_id: str,
        reason: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(
            f"Delivery {attempt_id} failed: {reason}",
            {"attempt_id": attempt_id, "status_code": status_code},
        )
        self.attempt_id = attempt_id
        self.reason = reason
        self.status_code = status_code
        self.response_body = response_body
