"""Webhook signature scheme for encoding worker callbacks.

The worker sends ``X-Webhook-Signature: t=<unix seconds>,v1=<hex digest>``
where the digest is HMAC-SHA256 over ``"<t>." + raw body`` keyed with the
job's callback secret. Verification must run on the exact request bytes.
"""

import hashlib
import hmac
import time
from typing import Optional

from encoding_gateway.modules.encoding.exceptions import SignatureError, SignatureFailure

SIGNATURE_HEADER = "X-Webhook-Signature"
DEFAULT_TOLERANCE_SECONDS = 300


def parse_signature_header(header: str) -> dict[str, str]:
    """Split ``k1=v1,k2=v2`` into a dict, ignoring malformed parts."""
    parts: dict[str, str] = {}
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if sep and key and value:
            parts[key] = value
    return parts


def compute_signature(secret: str, timestamp: int | str, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 of ``"<timestamp>." + raw_body``."""
    signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def build_signature_header(secret: str, raw_body: bytes, timestamp: Optional[int] = None) -> str:
    """Produce a signature header the way the encoding worker does."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(secret, ts, raw_body)}"


def verify_signature(
    raw_body: bytes,
    header: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> int:
    """Verify a webhook signature header against the raw request body.

    Args:
        raw_body: Exact request bytes as received
        header: Value of the signature header, if any
        secret: Shared callback secret
        tolerance: Maximum allowed clock difference in seconds
        now: Current Unix time (defaults to the system clock)

    Returns:
        The verified signature timestamp

    Raises:
        SignatureError: MISSING, STALE or MISMATCH
    """
    if not header:
        raise SignatureError(SignatureFailure.MISSING, "Missing webhook signature")

    parts = parse_signature_header(header)
    timestamp = parts.get("t")
    digest = parts.get("v1")
    if not timestamp or not digest:
        raise SignatureError(SignatureFailure.MISSING, "Signature header lacks t or v1")

    try:
        signed_at = int(timestamp)
    except ValueError:
        raise SignatureError(SignatureFailure.MISSING, "Signature timestamp is not an integer") from None

    current = time.time() if now is None else now
    if abs(current - signed_at) > tolerance:
        raise SignatureError(SignatureFailure.STALE, "Signature timestamp outside tolerance")

    expected = compute_signature(secret, timestamp, raw_body)
    if not hmac.compare_digest(expected.encode("ascii"), digest.encode("utf-8")):
        raise SignatureError(SignatureFailure.MISMATCH, "Invalid webhook signature")

    return signed_at
