from .clock import ensure_utc, utcnow
from .crypto import canonical_json, check_shared_secret, generate_signature, verify_signature

__all__ = [
    "ensure_utc", "utcnow",
    "canonical_json", "check_shared_secret", "generate_signature", "verify_signature",
]
