from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.errors import EntropyUnavailable


AESGCM_KEY_LEN = 32
AESGCM_NONCE_LEN = 12
AESGCM_TAG_LEN = 16


@dataclass(frozen=True)
class FileKeyMaterial:
    key: bytes
    iv: bytes

    def __repr__(self) -> str:
        return "FileKeyMaterial(key=<redacted>, iv=<redacted>)"


def generate_file_key() -> FileKeyMaterial:
    try:
        return FileKeyMaterial(
            key=secrets.token_bytes(AESGCM_KEY_LEN),
            iv=secrets.token_bytes(AESGCM_NONCE_LEN),
        )
    except (OSError, NotImplementedError) as e:
        raise EntropyUnavailable() from e


def _check(key: bytes, iv: bytes) -> None:
    if len(key) != AESGCM_KEY_LEN:
        raise ValueError("Invalid AES-GCM key length")
    if len(iv) != AESGCM_NONCE_LEN:
        raise ValueError("Invalid AES-GCM IV length")


def aead_encrypt(*, key: bytes, iv: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> bytes:
    """Returns ciphertext||tag, the layout stored in the object store."""
    _check(key, iv)
    return AESGCM(key).encrypt(iv, plaintext, aad)


def aead_decrypt(*, key: bytes, iv: bytes, ciphertext: bytes, aad: Optional[bytes] = None) -> bytes:
    _check(key, iv)
    return AESGCM(key).decrypt(iv, ciphertext, aad)


def aead_decrypt_stream(
    *,
    key: bytes,
    iv: bytes,
    ciphertext: bytes,
    chunk_size: int = 64 * 1024,
) -> Iterator[bytes]:
    """
    Decrypt ciphertext||tag chunk by chunk.

    The tag is checked in finalize(); an InvalidTag raised there aborts
    whatever stream is consuming this generator.
    """
    _check(key, iv)
    if len(ciphertext) < AESGCM_TAG_LEN:
        raise ValueError("Invalid ciphertext blob")
    body, tag = ciphertext[:-AESGCM_TAG_LEN], ciphertext[-AESGCM_TAG_LEN:]
    decryptor = Cipher(algorithms.AES(key), modes.GCM(iv, tag)).decryptor()
    for start in range(0, len(body), chunk_size):
        chunk = decryptor.update(body[start:start + chunk_size])
        if chunk:
            yield chunk
    tail = decryptor.finalize()
    if tail:
        yield tail


def iter_chunks(data: bytes, chunk_size: int = 64 * 1024) -> Iterable[bytes]:
    for start in range(0, len(data), chunk_size):
        yield data[start:start + chunk_size]


def seal_with_nonce(key: bytes, plaintext: bytes, aad: bytes = b"") -> bytes:
    """Fresh random nonce per call, stored in front: nonce||ciphertext||tag."""
    if len(key) != AESGCM_KEY_LEN:
        raise ValueError("Invalid AES-GCM key length")
    nonce = secrets.token_bytes(AESGCM_NONCE_LEN)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, aad)


def open_with_nonce(key: bytes, blob: bytes, aad: bytes = b"") -> bytes:
    if len(key) != AESGCM_KEY_LEN:
        raise ValueError("Invalid AES-GCM key length")
    if len(blob) < AESGCM_NONCE_LEN + AESGCM_TAG_LEN:
        raise ValueError("Invalid ciphertext blob")
    return AESGCM(key).decrypt(blob[:AESGCM_NONCE_LEN], blob[AESGCM_NONCE_LEN:], aad)
