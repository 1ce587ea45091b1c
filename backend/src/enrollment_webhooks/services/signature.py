"""HMAC-SHA256 signing and verification of webhook payloads.

Header format::

    X-Webhook-Signature: t=<unix timestamp>,v1=<base64(HMAC-SHA256(secret, "<t>.<json>"))>

The JSON is the compact serialization produced by ``canonical_json``, which is
also the exact body the delivery worker sends, so subscribers can verify over
the raw request body.
"""
import base64
import binascii
import hashlib
import hmac
import json
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
SIGNATURE_VERSION = "v1"


def canonical_json(payload: Any) -> str:
    """Compact JSON serialization used for both signing and the request body."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def compute_signature(secret: str, timestamp: int, payload: Any) -> bytes:
    """Raw HMAC-SHA256 digest of ``<timestamp>.<canonical json>``."""
    message = f"{timestamp}.{canonical_json(payload)}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()


def sign(secret: str, timestamp: int, payload: Any) -> str:
    """
    Build the signature header value for a payload.

    Args:
        secret: Webhook signing secret
        timestamp: Unix timestamp in seconds
        payload: JSON-serializable payload (the full request body)

    Returns:
        Header value ``t=<timestamp>,v1=<base64 signature>``
    """
    digest = compute_signature(secret, timestamp, payload)
    return f"t={timestamp},{SIGNATURE_VERSION}={base64.b64encode(digest).decode('ascii')}"


def parse_header(header: str) -> tuple[int, bytes]:
    """
    Split a signature header into timestamp and raw signature.

    Raises:
        ValueError: If the header is missing either part or is malformed
    """
    parts: dict[str, str] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            raise ValueError(f"Malformed signature component: {item!r}")
        parts[key] = value

    if "t" not in parts or SIGNATURE_VERSION not in parts:
        raise ValueError("Signature header must contain t= and v1=")

    timestamp = int(parts["t"])
    try:
        signature = base64.b64decode(parts[SIGNATURE_VERSION], validate=True)
    except binascii.Error as e:
        raise ValueError(f"Signature is not valid base64: {e}") from e

    return timestamp, signature


def verify(secret: str, header: str | None, payload: Any) -> bool:
    """
    Verify a signature header against a payload.

    Fails closed: any parse error or mismatch returns False. Timestamp
    freshness is not checked here; see ``is_fresh``.
    """
    if not header:
        return False

    try:
        timestamp, signature = parse_header(header)
        expected = compute_signature(secret, timestamp, payload)
    except (ValueError, TypeError) as e:
        logger.debug("signature_parse_failed", error=str(e))
        return False

    return hmac.compare_digest(expected, signature)


def is_fresh(header: str | None, now: float, tolerance_seconds: int) -> bool:
    """True when the header timestamp is within ``tolerance_seconds`` of ``now``."""
    if not header:
        return False

    try:
        timestamp, _ = parse_header(header)
    except ValueError:
        return False

    return abs(now - timestamp) <= tolerance_seconds
