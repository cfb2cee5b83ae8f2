import base64
import binascii
import hashlib
import hmac
import json
import secrets


def canonical_json(payload: dict) -> str:
    """Deterministic JSON encoding used for signing and as the wire body."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def generate_signature(payload: dict | str | bytes, secret: str) -> str:
    """Generate HMAC-SHA256 hex signature over the canonical form of a payload."""
    if isinstance(payload, dict):
        payload = canonical_json(payload)
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: dict | str | bytes, secret: str, signature: str) -> bool:
    """Verify HMAC-SHA256 signature against a payload in constant time."""
    expected = generate_signature(payload, secret)
    return hmac.compare_digest(expected, signature or "")


def generate_secret() -> str:
    return secrets.token_hex(32)


def check_shared_secret(authorization: str | None, secret: str) -> bool:
    """Validate the provider's Authorization header against the shared secret.

    Accepts ``Basic base64(secret:)`` (the provider's format) and
    ``Bearer <secret>``.
    """
    if not authorization:
        return False
    scheme, _, credentials = authorization.strip().partition(" ")
    credentials = credentials.strip()
    if scheme.lower() == "basic":
        try:
            decoded = base64.b64decode(credentials, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return False
        candidate = decoded.split(":", 1)[0]
    elif scheme.lower() == "bearer":
        candidate = credentials
    else:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), secret.encode("utf-8"))
