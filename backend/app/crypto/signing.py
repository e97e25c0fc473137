from __future__ import annotations

import hashlib
import hmac
import time
from typing import Optional

SIGNATURE_VERSION = "v1"
# receivers should reject signatures older than this
DEFAULT_TOLERANCE_SECONDS = 300


def derive_signing_key(secret: str) -> bytes:
    """The HMAC key both sides derive from the one-time-revealed secret."""
    return hashlib.sha256(secret.encode("utf-8")).digest()


def sign_payload(signing_key: bytes, payload: bytes, timestamp: Optional[int] = None) -> str:
    ts = int(time.time()) if timestamp is None else int(timestamp)
    signed = f"{ts}.".encode("utf-8") + payload
    digest = hmac.new(signing_key, signed, hashlib.sha256).hexdigest()
    return f"t={ts},{SIGNATURE_VERSION}={digest}"


def parse_signature_header(header: str) -> tuple[int, str] | None:
    try:
        parts = dict(item.split("=", 1) for item in header.split(","))
        return int(parts["t"]), parts[SIGNATURE_VERSION]
    except (KeyError, ValueError):
        return None


def verify_signature(
    secret: str,
    payload: bytes,
    header: str,
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[int] = None,
) -> bool:
    """Receiver-side check of an X-Webhook-Signature header."""
    parsed = parse_signature_header(header)
    if parsed is None:
        return False
    ts, received = parsed
    current = int(time.time()) if now is None else now
    if abs(current - ts) > tolerance:
        return False
    expected = sign_payload(derive_signing_key(secret), payload, ts).split(f"{SIGNATURE_VERSION}=", 1)[1]
    return hmac.compare_digest(expected, received)
