"""Single-use 2FA recovery codes."""
from __future__ import annotations

from typing import Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.two_factor import BackupCode
from app.security.secret_codec import SecretCodec, SecretKind, get_codec
from app.utils.datetime import utcnow

logger = structlog.get_logger()


class BackupCodeVault:
    def __init__(self, db: Session, codec: Optional[SecretCodec] = None):
        self.db = db
        self.codec = codec or get_codec()

    def issue(self, user_id: int, count: Optional[int] = None) -> list[str]:
        """Replace every code the user has with a fresh batch.

        The plaintext list is returned once; only fingerprints are stored.
        Does not commit, so callers can fold it into a larger transaction.
        """
        count = count or get_settings().BACKUP_CODE_COUNT

        codes: list[str] = []
        fingerprints: set[str] = set()
        while len(codes) < count:
            code, _ = self.codec.generate(SecretKind.BACKUP_CODE)
            fp = self.codec.fingerprint(code)
            if fp in fingerprints:
                continue
            fingerprints.add(fp)
            codes.append(code)

        self.db.execute(delete(BackupCode).where(BackupCode.user_id == user_id))
        self.db.add_all(BackupCode(user_id=user_id, code_hash=fp) for fp in fingerprints)
        self.db.flush()

        logger.info("two_factor.backup_codes.issued", user_id=user_id, count=count)
        return codes

    def consume(self, user_id: int, code: str) -> bool:
        """Mark a code used. True exactly once per code, even under races."""
        if not isinstance(code, str) or not code.strip():
            return False

        stmt = (
            update(BackupCode)
            .where(
                BackupCode.user_id == user_id,
                BackupCode.code_hash == self.codec.fingerprint(code),
                BackupCode.consumed_at.is_(None),
            )
            .values(consumed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.commit()

        if result.rowcount == 1:
            logger.info("two_factor.backup_code.consumed", user_id=user_id)
            return True
        return False

    def remaining(self, user_id: int) -> int:
        stmt = select(func.count(BackupCode.id)).where(
            BackupCode.user_id == user_id,
            BackupCode.consumed_at.is_(None),
        )
        return self.db.execute(stmt).scalar_one()

    def revoke_all(self, user_id: int) -> None:
        self.db.execute(delete(BackupCode).where(BackupCode.user_id == user_id))
