"""
Generation, hashing and verification of opaque secrets.

Everything here is a pure function over caller-supplied values. Two hash
schemes are offered:

- hash()/verify(): argon2id, salted and slow. For secrets that are looked up
  by some other column first (transfer passwords by transfer id, API keys by
  their display prefix).
- fingerprint(): HMAC-SHA256 under the server pepper. Deterministic, so the
  database can match on it inside an atomic conditional UPDATE (backup codes).
"""
from __future__ import annotations

import hashlib
import hmac
import secrets
from enum import Enum
from typing import Optional

import pyotp
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from app.core.config import Settings, get_settings
from app.core.errors import EntropyUnavailable


class SecretKind(str, Enum):
    API_KEY = "api_key"
    WEBHOOK_SECRET = "webhook_secret"
    TRANSFER_PASSWORD = "transfer_password"
    TOTP_SECRET = "totp_secret"
    BACKUP_CODE = "backup_code"


API_KEY_PREFIX = "fly_"
WEBHOOK_SECRET_PREFIX = "whsec_"
DISPLAY_PREFIX_LEN = 12

_KIND_PREFIX = {
    SecretKind.API_KEY: API_KEY_PREFIX,
    SecretKind.WEBHOOK_SECRET: WEBHOOK_SECRET_PREFIX,
}

_DEFAULT_BYTES = {
    SecretKind.API_KEY: 32,
    SecretKind.WEBHOOK_SECRET: 32,
    SecretKind.TRANSFER_PASSWORD: 12,
    SecretKind.TOTP_SECRET: 20,
    SecretKind.BACKUP_CODE: 4,
}


class OneTimeValue:
    """
    Plaintext secret returned exactly once from a creation call.

    It is not a column on any model and refuses pickling; repr/str are
    masked so it cannot end up in logs by accident. Call reveal() at the
    single place that hands it to the user.
    """

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    def reveal(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return "OneTimeValue(<redacted>)"

    __str__ = __repr__

    def __reduce__(self):
        raise TypeError("OneTimeValue cannot be serialized")

    def __eq__(self, other) -> bool:
        if isinstance(other, OneTimeValue):
            return hmac.compare_digest(self._value, other._value)
        return NotImplemented

    __hash__ = None


def normalize_code(code: str) -> str:
    return "".join(ch for ch in code if ch not in "- \t").upper()


class SecretCodec:
    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self._hasher = PasswordHasher(
            time_cost=settings.ARGON2_TIME_COST,
            memory_cost=settings.ARGON2_MEMORY_COST,
            parallelism=settings.ARGON2_PARALLELISM,
            hash_len=32,
            salt_len=16,
        )
        self._pepper = settings.SECRET_PEPPER.encode("utf-8")
        self._dummy_hash: Optional[str] = None

    # -- generation ---------------------------------------------------------

    def generate(self, kind: SecretKind, byte_length: Optional[int] = None) -> tuple[str, str]:
        """Return (plaintext, display_prefix). The prefix is safe to persist."""
        n = byte_length or _DEFAULT_BYTES[kind]
        try:
            if kind is SecretKind.BACKUP_CODE:
                raw = secrets.token_hex(n).upper()
                half = len(raw) // 2
                return f"{raw[:half]}-{raw[half:]}", ""
            if kind is SecretKind.TOTP_SECRET:
                # base32 length must cover n bytes: 8 chars per 5 bytes
                return pyotp.random_base32(length=-(-n * 8 // 5)), ""
            body = secrets.token_urlsafe(n)
        except (OSError, NotImplementedError) as e:
            raise EntropyUnavailable() from e

        if kind is SecretKind.TRANSFER_PASSWORD:
            return body, ""
        plaintext = f"{_KIND_PREFIX[kind]}{body}"
        return plaintext, plaintext[:DISPLAY_PREFIX_LEN]

    # -- slow salted hash -------------------------------------------------------

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: Optional[str], digest: Optional[str]) -> bool:
        """
        Never raises. A missing digest still costs one argon2 verification
        so absence is not observable through timing.
        """
        if not isinstance(plaintext, str):
            plaintext = ""
        if not isinstance(digest, str) or not digest:
            self._burn(plaintext)
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHashError:
            return True

    def _burn(self, plaintext: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        try:
            self._hasher.verify(self._dummy_hash, plaintext)
        except VerificationError:
            pass

    # -- keyed deterministic fingerprint ---------------------------------------

    def fingerprint(self, plaintext: str) -> str:
        return hmac.new(self._pepper, normalize_code(plaintext).encode("utf-8"), hashlib.sha256).hexdigest()

    def fingerprint_matches(self, plaintext: str, expected: str) -> bool:
        return hmac.compare_digest(self.fingerprint(plaintext), expected)


_codec: Optional[SecretCodec] = None


def get_codec() -> SecretCodec:
    global _codec
    if _codec is None:
        _codec = SecretCodec()
    return _codec
