"""
At-rest wrapping under the process-wide master key.

Used for the few values that must stay recoverable server-side: TOTP
shared secrets, per-file AES keys, webhook signing keys. The AAD binds
each blob to its owning row so ciphertexts cannot be swapped between rows.
"""
from cryptography.exceptions import InvalidTag

from app.core.config import get_settings
from app.crypto.symmetric import open_with_nonce, seal_with_nonce


class EnvelopeError(Exception):
    pass


def seal(plaintext: bytes, aad: bytes) -> bytes:
    return seal_with_nonce(get_settings().master_key_bytes, plaintext, aad=aad)


def open_sealed(blob: bytes, aad: bytes) -> bytes:
    try:
        return open_with_nonce(get_settings().master_key_bytes, blob, aad=aad)
    except (InvalidTag, ValueError) as e:
        raise EnvelopeError("sealed value failed authentication") from e


def totp_aad(user_id: int) -> bytes:
    return f"totp|user={user_id}".encode("utf-8")


def file_key_aad(file_id: str) -> bytes:
    return f"file-key|file={file_id}".encode("utf-8")


def webhook_aad(webhook_id: str) -> bytes:
    return f"webhook|id={webhook_id}".encode("utf-8")
