from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.errors import NotFound
from app.models.transfer import Transfer, TransferFile
from app.security.sanitizer import InputSanitizer
from app.security.secret_codec import SecretCodec, get_codec
from app.services.custodian import TransferEncryptionCustodian
from app.services.storage import ObjectStore, get_store
from app.utils.datetime import utcnow

logger = structlog.get_logger()


class TransferService:
    """Owner-side transfer management: create, upload, list, delete."""

    def __init__(self, db: Session, store: Optional[ObjectStore] = None, codec: Optional[SecretCodec] = None):
        self.db = db
        self.store = store or get_store()
        self.codec = codec or get_codec()
        self.custodian = TransferEncryptionCustodian(db, store=self.store, codec=self.codec)

    def create(self, owner_id: int, title: str, password: Optional[str], expires_in_days: int) -> Transfer:
        transfer = Transfer(
            owner_id=owner_id,
            title=title,
            password_hash=self.codec.hash(password) if password else None,
            expires_at=utcnow() + timedelta(days=expires_in_days),
        )
        self.db.add(transfer)
        self.db.commit()
        self.db.refresh(transfer)

        logger.info("transfer.created", transfer_id=transfer.id, owner_id=owner_id, protected=transfer.is_protected)
        return transfer

    def get_owned(self, owner_id: int, transfer_id: str) -> Transfer:
        transfer = self.db.get(Transfer, transfer_id)
        # someone else's transfer looks exactly like a missing one
        if transfer is None or transfer.owner_id != owner_id:
            raise NotFound("Transfer not found")
        return transfer

    def list_owned(self, owner_id: int, limit: int = 50) -> list[Transfer]:
        stmt = (
            select(Transfer)
            .where(Transfer.owner_id == owner_id)
            .order_by(Transfer.created_at.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def usage_summary(self, owner_id: int) -> dict:
        """Totals over every transfer the owner has: count, unexpired, downloads."""
        row = self.db.execute(
            select(
                func.count(Transfer.id),
                func.count(Transfer.id).filter(Transfer.expires_at > utcnow()),
                func.coalesce(func.sum(Transfer.download_count), 0),
            ).where(Transfer.owner_id == owner_id)
        ).one()
        return {"total": row[0], "active": row[1], "downloads": row[2]}

    def add_file(
        self,
        owner_id: int,
        transfer_id: str,
        filename: str,
        data: bytes,
        mime_type: Optional[str] = None,
        encrypt: bool = True,
    ) -> TransferFile:
        transfer = self.get_owned(owner_id, transfer_id)

        file_id = uuid.uuid4().hex
        name = InputSanitizer.sanitize_filename(filename)
        file = TransferFile(
            id=file_id,
            path=f"transfers/{transfer.id}/{file_id}",
            original_name=name,
            mime_type=mime_type or "application/octet-stream",
            size=len(data),
        )
        transfer.files.append(file)
        self.db.flush()

        if encrypt:
            self.custodian.register_file(file)
            self.custodian.seal(file, data)
        else:
            self.store.put(file.path, data)

        self.db.commit()
        self.db.refresh(file)

        logger.info("file.uploaded", transfer_id=transfer.id, file_id=file.id, encrypted=encrypt, size=file.size)
        return file

    def delete(self, owner_id: int, transfer_id: str) -> None:
        transfer = self.get_owned(owner_id, transfer_id)
        paths = [f.path for f in transfer.files]
        self.db.delete(transfer)
        self.db.commit()

        for path in paths:
            self.store.delete(path)
        logger.info("transfer.deleted", transfer_id=transfer_id, owner_id=owner_id)
