"""
TransferEncryptionCustodian: owns per-file AES-256-GCM keys.

Keys are generated at upload, wrapped under the master key on the file row,
and only unwrapped for a caller who passes the transfer's gate. Nothing is
cached; every download re-runs the full check against the database.
"""
from __future__ import annotations

import base64
import io
import re
import zipfile
from dataclasses import dataclass
from typing import Iterator, Optional

import structlog
from cryptography.exceptions import InvalidTag
from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.errors import Expired, IncorrectPassword, NotFound, RequiresPassword
from app.crypto.symmetric import FileKeyMaterial, aead_decrypt_stream, aead_encrypt, generate_file_key, iter_chunks
from app.models.transfer import Transfer, TransferFile
from app.security.envelope import file_key_aad, open_sealed, seal
from app.security.secret_codec import SecretCodec, get_codec
from app.services.access_gate import session_token_valid
from app.services.storage import ObjectNotFound, ObjectStore, get_store
from app.utils.datetime import utcnow

logger = structlog.get_logger()


@dataclass(frozen=True)
class DownloadGrant:
    download_url: str
    file_name: str
    # base64; present only for encrypted files
    key: Optional[str] = None
    iv: Optional[str] = None

    def __repr__(self) -> str:
        return f"DownloadGrant(file_name={self.file_name!r}, encrypted={self.key is not None})"

    def to_dict(self) -> dict:
        body = {"downloadUrl": self.download_url, "fileName": self.file_name}
        if self.key is not None:
            body["key"] = self.key
            body["iv"] = self.iv
        return body


@dataclass(frozen=True)
class Bundle:
    transfer_id: str
    owner_id: int
    file_name: str
    file_count: int
    chunks: Iterator[bytes]


class _ZipSink(io.RawIOBase):
    """Write-only, unseekable buffer that zipfile streams into."""

    def __init__(self):
        self._chunks: list[bytes] = []

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        self._chunks.append(bytes(b))
        return len(b)

    def drain(self) -> list[bytes]:
        chunks, self._chunks = self._chunks, []
        return chunks


def _bundle_name(title: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]", "_", f"{title or 'files'}.zip")


def _unique_name(name: str, seen: set[str]) -> str:
    candidate, n = name, 1
    while candidate in seen:
        stem, dot, ext = name.rpartition(".")
        candidate = f"{stem} ({n}).{ext}" if dot and stem else f"{name} ({n})"
        n += 1
    seen.add(candidate)
    return candidate


class TransferEncryptionCustodian:
    def __init__(self, db: Session, store: Optional[ObjectStore] = None, codec: Optional[SecretCodec] = None):
        self.db = db
        self.store = store or get_store()
        self.codec = codec or get_codec()

    # -- upload side ------------------------------------------------------

    def register_file(self, file: TransferFile) -> FileKeyMaterial:
        """Generate and persist (wrapped) the key/IV for one file."""
        if file.id is None:
            self.db.add(file)
            self.db.flush()

        material = generate_file_key()
        file.is_encrypted = True
        file.encryption_key = seal(material.key, file_key_aad(file.id))
        file.encryption_iv = material.iv
        self.db.flush()
        return material

    def seal(self, file: TransferFile, plaintext: bytes) -> bytes:
        """Encrypt upload bytes under the file's key and hand them to the store."""
        material = self._unwrap(file)
        ciphertext = aead_encrypt(key=material.key, iv=material.iv, plaintext=plaintext)
        self.store.put(file.path, ciphertext)
        return ciphertext

    def _unwrap(self, file: TransferFile) -> FileKeyMaterial:
        if not file.is_encrypted or file.encryption_key is None or file.encryption_iv is None:
            raise NotFound("File has no encryption key")
        key = open_sealed(file.encryption_key, file_key_aad(file.id))
        return FileKeyMaterial(key=key, iv=file.encryption_iv)

    # -- download side ------------------------------------------------------

    def _authorize(self, transfer_id: str, password: Optional[str], access_token: Optional[str]) -> Transfer:
        transfer = self.db.get(Transfer, transfer_id)
        if transfer is None:
            raise NotFound("Transfer not found")
        # expiry wins even over a correct password
        if utcnow() >= transfer.expires_at:
            raise Expired("Transfer has expired")

        if not transfer.is_protected:
            return transfer
        if session_token_valid(access_token, transfer, self.codec):
            return transfer
        if not password:
            raise RequiresPassword()
        if not self.codec.verify(password, transfer.password_hash):
            logger.info("transfer.download.password_rejected", transfer_id=transfer_id)
            raise IncorrectPassword()
        return transfer

    def authorize_download(
        self,
        transfer_id: str,
        file_id: str,
        password: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> DownloadGrant:
        transfer = self._authorize(transfer_id, password, access_token)

        file = self.db.get(TransferFile, file_id)
        if file is None or file.transfer_id != transfer.id:
            raise NotFound("File not found")

        key = iv = None
        if file.is_encrypted:
            material = self._unwrap(file)
            key = base64.b64encode(material.key).decode("ascii")
            iv = base64.b64encode(material.iv).decode("ascii")

        ttl = get_settings().DOWNLOAD_URL_TTL_SECONDS
        url = self.store.presigned_url(file.path, ttl, filename=file.original_name)

        self.db.execute(
            update(TransferFile)
            .where(TransferFile.id == file.id)
            .values(download_count=TransferFile.download_count + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            update(Transfer)
            .where(Transfer.id == transfer.id)
            .values(download_count=Transfer.download_count + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        logger.info(
            "transfer.download.authorized",
            transfer_id=transfer.id,
            file_id=file.id,
            encrypted=file.is_encrypted,
        )
        return DownloadGrant(download_url=url, file_name=file.original_name, key=key, iv=iv)

    def stream_bundle(
        self,
        transfer_id: str,
        password: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> Bundle:
        """
        Authorize now, then return a lazily-built ZIP of every file.

        Encrypted entries are decrypted chunk by chunk; a failed tag check
        aborts the stream.
        """
        transfer = self._authorize(transfer_id, password, access_token)
        files = list(transfer.files)
        if not files:
            raise NotFound("No files in transfer")

        self.db.execute(
            update(Transfer)
            .where(Transfer.id == transfer.id)
            .values(download_count=Transfer.download_count + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        # unwrap up front so the generator never touches the session
        entries = []
        for file in files:
            material = self._unwrap(file) if file.is_encrypted else None
            entries.append((file.id, file.path, file.original_name, material))

        logger.info("transfer.bundle.started", transfer_id=transfer.id, files=len(entries))
        return Bundle(
            transfer_id=transfer.id,
            owner_id=transfer.owner_id,
            file_name=_bundle_name(transfer.title),
            file_count=len(entries),
            chunks=self._zip(transfer.id, entries),
        )

    def _zip(self, transfer_id: str, entries: list) -> Iterator[bytes]:
        sink = _ZipSink()
        seen: set[str] = set()
        with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
            for file_id, path, name, material in entries:
                try:
                    blob = self.store.get(path)
                except ObjectNotFound:
                    logger.warning("transfer.bundle.file_missing", transfer_id=transfer_id, file_id=file_id)
                    continue

                if material is None:
                    source = iter_chunks(blob)
                else:
                    source = aead_decrypt_stream(key=material.key, iv=material.iv, ciphertext=blob)

                info = zipfile.ZipInfo(_unique_name(name, seen), date_time=utcnow().timetuple()[:6])
                info.compress_type = zipfile.ZIP_DEFLATED
                try:
                    with zf.open(info, mode="w") as dest:
                        for chunk in source:
                            dest.write(chunk)
                            yield from sink.drain()
                except InvalidTag:
                    logger.error("transfer.bundle.tag_mismatch", transfer_id=transfer_id, file_id=file_id)
                    raise
                yield from sink.drain()
        yield from sink.drain()
