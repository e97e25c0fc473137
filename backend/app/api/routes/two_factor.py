from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import rate_limit
from app.core.security import ensure_same_user, get_current_user
from app.db.session import get_db
from app.models.user import User
from app.schemas.common import SuccessResponse
from app.schemas.twofa import (
    TwoFABackupCodesRequest,
    TwoFABackupCodesResponse,
    TwoFAConfirmRequest,
    TwoFASetupResponse,
    TwoFAStatusResponse,
    TwoFAUserRequest,
    TwoFAVerifyRequest,
    TwoFAVerifyResponse,
)
from app.services.two_factor import TwoFactorService

router = APIRouter(prefix="/2fa", tags=["2fa"])


@router.get("/setup", response_model=TwoFASetupResponse, dependencies=[Depends(rate_limit("api"))])
def start_setup(
    user_id: int = Query(alias="userId"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_same_user(current_user, user_id)
    challenge = TwoFactorService(db).start_setup(current_user.id)
    return TwoFASetupResponse(
        secret=challenge.secret,
        totp_uri=challenge.totp_uri,
        qr_code_url=challenge.qr_code_url,
    )


@router.post("/setup", response_model=TwoFABackupCodesResponse, dependencies=[Depends(rate_limit("two_factor"))])
def confirm_setup(
    payload: TwoFAConfirmRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_same_user(current_user, payload.user_id)
    codes = TwoFactorService(db).confirm_setup(current_user.id, payload.secret, payload.token)
    return TwoFABackupCodesResponse(backup_codes=codes)


@router.post("/disable", response_model=SuccessResponse, dependencies=[Depends(rate_limit("sensitive"))])
def disable(
    payload: TwoFAUserRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_same_user(current_user, payload.user_id)
    TwoFactorService(db).disable(current_user.id)
    return SuccessResponse(message="2FA disabled")


@router.get("/status", response_model=TwoFAStatusResponse)
def status(
    user_id: int = Query(alias="userId"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_same_user(current_user, user_id)
    st = TwoFactorService(db).status(current_user.id)
    return TwoFAStatusResponse(
        is_enabled=st.is_enabled,
        backup_codes_remaining=st.backup_codes_remaining,
        enabled_at=st.enabled_at,
    )


@router.post("/verify", response_model=TwoFAVerifyResponse, dependencies=[Depends(rate_limit("two_factor"))])
def verify(
    payload: TwoFAVerifyRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_same_user(current_user, payload.user_id)
    result = TwoFactorService(db).verify(current_user.id, payload.token)
    return TwoFAVerifyResponse(verified=result.verified, used_backup_code=result.used_backup_code)


@router.post("/backup-codes", response_model=TwoFABackupCodesResponse, dependencies=[Depends(rate_limit("sensitive"))])
def regenerate_backup_codes(
    payload: TwoFABackupCodesRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_same_user(current_user, payload.user_id)
    codes = TwoFactorService(db).regenerate_backup_codes(current_user.id, payload.token)
    return TwoFABackupCodesResponse(backup_codes=codes)
