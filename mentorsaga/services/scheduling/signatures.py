"""HMAC-SHA256 verification for scheduling-service webhooks."""

import hashlib
import hmac

from mentorsaga.common.errors import AuthenticationError


def compute_signature(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(secret: str, payload: bytes, signature: str | None) -> None:
    """Raise `AuthenticationError` unless `signature` is the hex HMAC of the raw body."""

    if not secret:
        raise AuthenticationError("scheduling webhook secret is not configured")
    if not signature:
        raise AuthenticationError("missing X-Cal-Signature-256 header")
    if not hmac.compare_digest(compute_signature(secret, payload), signature.strip().lower()):
        raise AuthenticationError("invalid scheduling webhook signature")
