"""Payload serialization and HMAC-SHA256 signatures.

The signature header carries the hex digest of exactly the bytes sent as the
request body. Receivers verify by computing the same digest over the raw body
they received, so serialization must be deterministic: compact separators,
envelope key order preserved, non-ASCII characters left unescaped.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any


def serialize_payload(payload: dict[str, Any]) -> bytes:
    """Serialize a payload to the compact JSON bytes that are sent and signed.

    Args:
        payload: Envelope dict (``{"event", "event_id", "timestamp", "data"}``).

    Returns:
        UTF-8 encoded JSON without insignificant whitespace.
    """
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_signature(payload: bytes | str, secret: str) -> str:
    """Compute the HMAC-SHA256 signature for a webhook body.

    Args:
        payload: Serialized body, as bytes or as a JSON string.
        secret: Subscription signing secret.

    Returns:
        Lowercase hex digest (64 characters).
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=payload,
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify_signature(payload: bytes | str, secret: str, signature: str) -> bool:
    """Verify a webhook signature in constant time.

    Args:
        payload: Raw body that was received.
        secret: Shared signing secret.
        signature: Value of the X-Webhook-Signature header.

    Returns:
        True if signature is valid, False otherwise.
    """
    expected = compute_signature(payload, secret)
    return hmac.compare_digest(expected, signature.strip().lower())
