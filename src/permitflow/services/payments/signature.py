"""HMAC signature validation for payment processor webhooks.

The processor signs each delivery with a header of the form::

    t=1700000000,v1=5257a869e7ecebeda32affa62cdca3fa51cad7e77a0e56ff536d0ce8e108d8bd

where ``v1`` is the hex HMAC-SHA256 of ``"<t>.<raw body>"`` under the endpoint's
shared secret. Several ``v1`` entries may be present while a secret is rotated.

Security Note:
    verify_signature MUST run before any payload parsing. A failure produces no
    side effects.
"""

import hashlib
import hmac
import time
from typing import Optional

from permitflow.services.exceptions import InvalidSignatureError

SCHEME = "v1"


def compute_signature(raw_body: bytes, timestamp: int, secret: str) -> str:
    """Compute the hex HMAC-SHA256 of ``"<timestamp>.<raw_body>"``."""
    signed_payload = str(timestamp).encode("utf-8") + b"." + raw_body
    return hmac.new(
        key=secret.encode("utf-8"), msg=signed_payload, digestmod=hashlib.sha256
    ).hexdigest()


def build_signature_header(raw_body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a signature header (used by tests and local tooling)."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},{SCHEME}={compute_signature(raw_body, timestamp, secret)}"


def parse_signature_header(header: str) -> tuple[int, list[str]]:
    """Split a signature header into its timestamp and candidate signatures.

    Raises:
        InvalidSignatureError: Header is malformed or lacks a timestamp / v1 entry
    """
    timestamp: Optional[int] = None
    signatures: list[str] = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise InvalidSignatureError("Signature timestamp is not an integer")
        elif key == SCHEME:
            signatures.append(value.lower())

    if timestamp is None:
        raise InvalidSignatureError("Signature header has no timestamp")
    if not signatures:
        raise InvalidSignatureError(f"Signature header has no {SCHEME} signature")
    return timestamp, signatures


def verify_signature(
    raw_body: bytes,
    header: Optional[str],
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> int:
    """Verify a webhook signature header.

    Args:
        raw_body: Raw request body bytes (NOT parsed JSON)
        header: Value of the signature header
        secret: Endpoint signing secret
        tolerance_seconds: Maximum accepted age of the signed timestamp
            (0 disables the replay check)
        now: Current unix time (defaults to time.time())

    Returns:
        The signed timestamp

    Raises:
        InvalidSignatureError: Missing, malformed, stale or non-matching signature

    Security:
        Uses hmac.compare_digest() for constant-time comparison.
    """
    if not header:
        raise InvalidSignatureError("Missing signature header")
    if not secret:
        raise InvalidSignatureError("Webhook secret is not configured")

    timestamp, signatures = parse_signature_header(header)
    expected = compute_signature(raw_body, timestamp, secret)

    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise InvalidSignatureError("Signature does not match payload")

    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - timestamp) > tolerance_seconds:
        raise InvalidSignatureError("Signature timestamp outside tolerance window")

    return timestamp
