from src.utils.crypto import generate_signature, verify_signature

SIGNATURE_HEADER = "X-Signature"


class WebhookSigner:
    """Signs and verifies payment-link webhook bodies using HMAC-SHA256.

    Bodies are signed in canonical JSON form, so a receiver can verify either
    the raw request bytes or the decoded payload.
    """

    def __init__(self, secret: str):
        self.secret = secret

    def sign(self, payload: dict | str | bytes) -> str:
        return generate_signature(payload, self.secret)

    def verify(self, payload: dict | str | bytes, signature: str) -> bool:
        return verify_signature(payload, self.secret, signature)
