"""
Object store collaborator.

Bulk storage/CDN mechanics live outside this service; we only need to put
ciphertext, read it back for server-side bundling, and mint expiring
download URLs. LocalObjectStore backs development and tests; a bucket-backed
store only has to implement the same interface.
"""
from __future__ import annotations

import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import quote, urlencode

from app.core.config import Settings, get_settings


class ObjectNotFound(Exception):
    pass


class ObjectStore(ABC):
    @abstractmethod
    def put(self, path: str, data: bytes) -> None: ...

    @abstractmethod
    def get(self, path: str) -> bytes: ...

    @abstractmethod
    def delete(self, path: str) -> None: ...

    @abstractmethod
    def presigned_url(self, path: str, ttl_seconds: int, filename: Optional[str] = None) -> str: ...

    @abstractmethod
    def verify_presigned(self, path: str, expires: int, sig: str) -> bool: ...


class UrlSigner:
    """HMAC-signed, expiring URLs for the raw object route."""

    def __init__(self, secret: bytes, base_url: str):
        self._secret = secret
        self._base_url = base_url.rstrip("/")

    def _sig(self, path: str, expires: int) -> str:
        msg = f"{path}\n{expires}".encode("utf-8")
        return hmac.new(self._secret, msg, hashlib.sha256).hexdigest()

    def sign(self, path: str, ttl_seconds: int, filename: Optional[str] = None) -> str:
        expires = int(time.time()) + ttl_seconds
        query = {"expires": expires, "sig": self._sig(path, expires)}
        if filename:
            query["filename"] = filename
        return f"{self._base_url}/files/raw/{quote(path)}?{urlencode(query)}"

    def verify(self, path: str, expires: int, sig: str, now: Optional[int] = None) -> bool:
        current = int(time.time()) if now is None else now
        if expires < current:
            return False
        return hmac.compare_digest(self._sig(path, expires), sig)


class LocalObjectStore(ObjectStore):
    def __init__(self, root: str, signer: UrlSigner):
        self.root = Path(root)
        self.signer = signer

    def _resolve(self, path: str) -> Path:
        rel = PurePosixPath(path)
        if rel.is_absolute() or ".." in rel.parts:
            raise ValueError(f"invalid object path: {path}")
        return self.root.joinpath(*rel.parts)

    def put(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def get(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise ObjectNotFound(path)
        return target.read_bytes()

    def delete(self, path: str) -> None:
        self._resolve(path).unlink(missing_ok=True)

    def presigned_url(self, path: str, ttl_seconds: int, filename: Optional[str] = None) -> str:
        return self.signer.sign(path, ttl_seconds, filename)

    def verify_presigned(self, path: str, expires: int, sig: str) -> bool:
        return self.signer.verify(path, expires, sig)


_store: Optional[ObjectStore] = None


def build_store(settings: Settings) -> LocalObjectStore:
    signer = UrlSigner(settings.download_url_key, settings.PUBLIC_BASE_URL)
    return LocalObjectStore(settings.STORAGE_ROOT, signer)


def get_store() -> ObjectStore:
    global _store
    if _store is None:
        _store = build_store(get_settings())
    return _store


def set_store(store: Optional[ObjectStore]) -> None:
    global _store
    _store = store
