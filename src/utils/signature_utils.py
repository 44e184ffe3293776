"""
HMAC helpers for webhook signatures and shared-secret headers.
"""
import hashlib
import hmac
from typing import Optional

# Exceptions
from exceptions.pipeline_exception import AuthException

SIGNATURE_PREFIX = "sha256="


def compute_signature(payload_bytes: bytes, app_secret: str) -> str:
    return hmac.new(
        key=app_secret.encode("utf-8"),
        msg=payload_bytes,
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify_signature(payload_bytes: bytes, signature_header: Optional[str], app_secret: str) -> None:
    """
    Verify a Meta webhook signature (X-Hub-Signature-256: sha256=<hex>).

    Raises:
        AuthException: If the secret is not configured, the header is missing
            or malformed, or the digest does not match.
    """
    if not app_secret:
        raise AuthException("webhook app secret is not configured")

    if not signature_header:
        raise AuthException("missing signature header")

    if not signature_header.startswith(SIGNATURE_PREFIX):
        raise AuthException("invalid signature format")

    expected_sig = signature_header[len(SIGNATURE_PREFIX):]
    computed_sig = compute_signature(payload_bytes, app_secret)

    if not hmac.compare_digest(computed_sig.encode("utf-8"), expected_sig.lower().encode("utf-8")):
        raise AuthException("signature mismatch")


def verify_api_key(provided: Optional[str], expected: str) -> None:
    """
    Compare a shared-secret header against the configured key.

    Raises:
        AuthException: If either side is empty or they differ.
    """
    if not expected:
        raise AuthException("API key is not configured")
    if not provided:
        raise AuthException("Missing API key header (x-api-key)")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise AuthException("Invalid API key")
