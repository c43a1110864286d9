from __future__ import annotations

import hashlib
import hmac
from typing import Optional

SIGNATURE_PREFIX = "sha256="


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, secret: str, incoming_signature: Optional[str]) -> bool:
    """Constant-time check of an ``sha256=<hex>`` signature over the exact request bytes."""
    if not incoming_signature:
        return False
    provided = incoming_signature.strip()
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX) :]
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode("utf-8"), provided.lower().encode("utf-8"))


def verify_subscription(
    *,
    mode: Optional[str],
    token: Optional[str],
    expected_token: str,
) -> bool:
    if mode != "subscribe" or not expected_token or token is None:
        return False
    return hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8"))
