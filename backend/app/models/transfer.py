# backend/app/models/transfer.py
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, LargeBinary, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.utils.datetime import utcnow


def _new_id() -> str:
    return uuid.uuid4().hex


class Transfer(Base):
    __tablename__ = "transfers"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)

    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    title: Mapped[str] = mapped_column(String(255), default="", nullable=False)

    # None => publicly downloadable
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    download_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    files = relationship(
        "TransferFile",
        back_populates="transfer",
        cascade="all,delete-orphan",
        order_by="TransferFile.created_at",
    )

    @property
    def is_protected(self) -> bool:
        return self.password_hash is not None


class TransferFile(Base):
    __tablename__ = "transfer_files"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)

    transfer_id: Mapped[str] = mapped_column(ForeignKey("transfers.id", ondelete="CASCADE"), index=True, nullable=False)

    path: Mapped[str] = mapped_column(String(512), nullable=False)
    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(127), default="application/octet-stream", nullable=False)
    size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    is_encrypted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # file key wrapped under the master key; never leaves the server unwrapped
    # except inside an authorized download grant
    encryption_key: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    encryption_iv: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)

    download_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    transfer = relationship("Transfer", back_populates="files")
