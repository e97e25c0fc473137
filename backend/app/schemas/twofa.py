# backend/app/schemas/twofa.py
from __future__ import annotations

from datetime import datetime

from pydantic import Field

from app.schemas.common import RequestModel, ResponseModel


class TwoFASetupResponse(ResponseModel):
    secret: str
    totp_uri: str
    qr_code_url: str


class TwoFAConfirmRequest(RequestModel):
    user_id: int
    secret: str = Field(min_length=16, max_length=128)
    token: str = Field(min_length=6, max_length=6, pattern=r'^\d{6}$')


class TwoFAUserRequest(RequestModel):
    user_id: int


class TwoFAVerifyRequest(RequestModel):
    """`token` is a 6-digit TOTP code or an XXXX-XXXX backup code."""
    user_id: int
    token: str = Field(min_length=6, max_length=16)


class TwoFABackupCodesRequest(RequestModel):
    user_id: int
    token: str = Field(min_length=6, max_length=6, pattern=r'^\d{6}$')


class TwoFABackupCodesResponse(ResponseModel):
    success: bool = True
    backup_codes: list[str]
    message: str = "Save these codes now; they will not be shown again."


class TwoFAStatusResponse(ResponseModel):
    is_enabled: bool
    backup_codes_remaining: int
    enabled_at: datetime | None = None


class TwoFAVerifyResponse(ResponseModel):
    verified: bool
    used_backup_code: bool
