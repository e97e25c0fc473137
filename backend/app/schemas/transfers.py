from __future__ import annotations

from datetime import datetime

from pydantic import Field, field_validator

from app.schemas.common import RequestModel, ResponseModel
from app.security.sanitizer import InputSanitizer


class TransferCreate(RequestModel):
    title: str = Field(default="", max_length=255)
    password: str | None = Field(default=None, min_length=1, max_length=128)
    expires_in_days: int = Field(default=7, ge=1, le=30)

    @field_validator('title')
    @classmethod
    def validate_title(cls, v: str) -> str:
        return InputSanitizer.sanitize_label(v, max_length=255)


class TransferFileOut(ResponseModel):
    id: str
    original_name: str
    mime_type: str
    size: int
    is_encrypted: bool
    download_count: int


class TransferOut(ResponseModel):
    id: str
    title: str
    is_protected: bool
    expires_at: datetime
    download_count: int
    created_at: datetime
    files: list[TransferFileOut] = []


class TransferList(ResponseModel):
    success: bool = True
    transfers: list[TransferOut]


class DownloadUrlRequest(RequestModel):
    transfer_id: str = Field(min_length=1, max_length=64)
    file_id: str = Field(min_length=1, max_length=64)
    password: str | None = Field(default=None, max_length=128)
    access_token: str | None = Field(default=None, max_length=2048)


class DownloadUrlResponse(ResponseModel):
    download_url: str
    file_name: str
    key: str | None = None
    iv: str | None = None


class BundleRequest(RequestModel):
    password: str | None = Field(default=None, max_length=128)
    access_token: str | None = Field(default=None, max_length=2048)


class VerifyPasswordRequest(RequestModel):
    transfer_id: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=128)


class VerifyPasswordResponse(ResponseModel):
    valid: bool
    access_token: str | None = None
    expires_in: int = 0


class GateFileOut(ResponseModel):
    id: str
    name: str
    size: int
    mime_type: str
    is_encrypted: bool


class GateViewOut(ResponseModel):
    transfer_id: str
    state: str
    requires_password: bool
    title: str | None = None
    expires_at: datetime | None = None
    files: list[GateFileOut] = []


class TransferUsage(ResponseModel):
    total: int
    active: int


class DownloadUsage(ResponseModel):
    total: int


class ApiUsage(ResponseModel):
    total_calls: int
    active_keys: int
    rate_limit: int
    max_keys: int


class UsageOut(ResponseModel):
    success: bool = True
    plan: str
    transfers: TransferUsage
    downloads: DownloadUsage
    api: ApiUsage
