"""
TOTP enrollment: idle -> pending -> enabled, and enabled -> idle on disable.

A pending enrollment is just a row with is_enabled=False. It is never
cleaned up; the next setup call overwrites it and status() ignores it.
"""
from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from app.core.errors import InvalidCode, InvalidRequest, NotFound
from app.models.two_factor import TwoFactorEnrollment
from app.models.user import User
from app.security.envelope import EnvelopeError, open_sealed, seal, totp_aad
from app.security.totp import TOTPEngine
from app.services.backup_codes import BackupCodeVault
from app.utils.datetime import utcnow

logger = structlog.get_logger()


@dataclass(frozen=True)
class SetupChallenge:
    secret: str
    totp_uri: str
    qr_code_url: str

    def __repr__(self) -> str:
        return "SetupChallenge(secret=<redacted>)"


@dataclass(frozen=True)
class TwoFactorStatus:
    is_enabled: bool
    backup_codes_remaining: int
    enabled_at: Optional[datetime]


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    used_backup_code: bool


class TwoFactorService:
    def __init__(self, db: Session, engine: Optional[TOTPEngine] = None, vault: Optional[BackupCodeVault] = None):
        self.db = db
        self.engine = engine or TOTPEngine()
        self.vault = vault or BackupCodeVault(db)

    def _user(self, user_id: int) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    def _enrollment(self, user_id: int) -> Optional[TwoFactorEnrollment]:
        return self.db.get(TwoFactorEnrollment, user_id)

    def _secret(self, enrollment: TwoFactorEnrollment) -> Optional[str]:
        try:
            return open_sealed(enrollment.secret_ciphertext, totp_aad(enrollment.user_id)).decode("utf-8")
        except EnvelopeError:
            logger.error("two_factor.secret.unreadable", user_id=enrollment.user_id)
            return None

    def start_setup(self, user_id: int) -> SetupChallenge:
        user = self._user(user_id)
        enrollment = self._enrollment(user_id)
        if enrollment is not None and enrollment.is_enabled:
            raise InvalidRequest("2FA is already enabled")

        secret = self.engine.new_secret()
        ciphertext = seal(secret.encode("utf-8"), totp_aad(user_id))
        if enrollment is None:
            enrollment = TwoFactorEnrollment(user_id=user_id, secret_ciphertext=ciphertext)
            self.db.add(enrollment)
        else:
            enrollment.secret_ciphertext = ciphertext
            enrollment.created_at = utcnow()
        self.db.commit()

        uri = self.engine.provisioning_uri(secret, user.email)
        logger.info("two_factor.setup.started", user_id=user_id)
        return SetupChallenge(secret=secret, totp_uri=uri, qr_code_url=self.engine.qr_code_url(uri))

    def confirm_setup(self, user_id: int, secret: str, token: str) -> list[str]:
        """Move pending -> enabled. Returns the plaintext backup codes, once."""
        self._user(user_id)
        enrollment = self._enrollment(user_id)
        if enrollment is not None and enrollment.is_enabled:
            raise InvalidRequest("2FA is already enabled")

        stored = self._secret(enrollment) if enrollment is not None else None
        # a stale secret and a wrong code fail the same way
        same_secret = stored is not None and hmac.compare_digest(stored.encode("utf-8"), secret.encode("utf-8"))
        if not same_secret or not self.engine.verify(stored, token):
            logger.info("two_factor.setup.rejected", user_id=user_id)
            raise InvalidCode()

        enrollment.is_enabled = True
        enrollment.enabled_at = utcnow()
        codes = self.vault.issue(user_id)
        self.db.commit()

        logger.info("two_factor.enabled", user_id=user_id)
        return codes

    def verify(self, user_id: int, token: str) -> VerificationResult:
        """Check a login-time code: TOTP first, then the backup codes."""
        enrollment = self._enrollment(user_id)
        if enrollment is None or not enrollment.is_enabled:
            raise InvalidRequest("2FA is not enabled")

        secret = self._secret(enrollment)
        if secret is not None and self.engine.verify(secret, token):
            return VerificationResult(verified=True, used_backup_code=False)

        if self.vault.consume(user_id, token):
            return VerificationResult(verified=True, used_backup_code=True)

        logger.info("two_factor.verify.rejected", user_id=user_id)
        raise InvalidCode()

    def regenerate_backup_codes(self, user_id: int, token: str) -> list[str]:
        enrollment = self._enrollment(user_id)
        if enrollment is None or not enrollment.is_enabled:
            raise InvalidRequest("2FA is not enabled")

        secret = self._secret(enrollment)
        if secret is None or not self.engine.verify(secret, token):
            raise InvalidCode()

        codes = self.vault.issue(user_id)
        self.db.commit()
        return codes

    def disable(self, user_id: int) -> None:
        """Drop the secret and every backup code in one transaction."""
        self._user(user_id)
        enrollment = self._enrollment(user_id)
        if enrollment is None or not enrollment.is_enabled:
            raise InvalidRequest("2FA is not enabled")

        self.vault.revoke_all(user_id)
        self.db.delete(enrollment)
        self.db.commit()

        logger.info("two_factor.disabled", user_id=user_id)

    def status(self, user_id: int) -> TwoFactorStatus:
        enrollment = self._enrollment(user_id)
        if enrollment is None or not enrollment.is_enabled:
            return TwoFactorStatus(is_enabled=False, backup_codes_remaining=0, enabled_at=None)
        return TwoFactorStatus(
            is_enabled=True,
            backup_codes_remaining=self.vault.remaining(user_id),
            enabled_at=enrollment.enabled_at,
        )
