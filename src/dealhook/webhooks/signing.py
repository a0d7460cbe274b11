"""HMAC-SHA256 signatures for webhook payloads.

The signature covers the exact request body. Receivers recompute it with
their copy of the secret and compare against the signature header.
"""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def _to_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def compute_signature(payload: str | bytes, secret: str) -> str:
    """Compute HMAC-SHA256 signature for a webhook payload.

    Args:
        payload: Serialized body exactly as transmitted.
        secret: Shared secret for HMAC. Must be non-empty.

    Returns:
        Signature in format "sha256=<hex_digest>".

    Raises:
        ValueError: If the secret is empty.
    """
    if not secret:
        raise ValueError("Cannot sign a payload without a secret")

    signature = hmac.new(
        key=secret.encode("utf-8"),
        msg=_to_bytes(payload),
        digestmod=hashlib.sha256,
    ).hexdigest()
    return f"{SIGNATURE_PREFIX}{signature}"


def verify_signature(payload: str | bytes, secret: str, signature: str) -> bool:
    """Verify HMAC-SHA256 signature for a webhook payload.

    Args:
        payload: Body that was signed.
        secret: Shared secret for HMAC.
        signature: Signature to verify (format: "sha256=<hex_digest>").

    Returns:
        True if signature is valid, False otherwise.
    """
    if not secret:
        return False
    expected = compute_signature(payload, secret)
    return hmac.compare_digest(expected, signature)
