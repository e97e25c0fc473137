# backend/app/models/two_factor.py
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, LargeBinary, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.utils.datetime import utcnow


class TwoFactorEnrollment(Base):
    """One row per user; absent row means 2FA idle.

    is_enabled=False is the pending state: a secret has been handed out
    but never verified. A new setup simply overwrites it.
    """
    __tablename__ = "two_factor_enrollments"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)

    # AES-GCM(master key) of the base32 secret, nonce-prefixed
    secret_ciphertext: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enabled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="two_factor")


class BackupCode(Base):
    __tablename__ = "backup_codes"
    __table_args__ = (UniqueConstraint("user_id", "code_hash", name="uq_backup_codes_user_hash"),)

    id: Mapped[int] = mapped_column(primary_key=True)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)

    # keyed HMAC fingerprint, lookup happens by value
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    consumed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
