from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import rate_limit
from app.core.security import ensure_same_user, get_current_user
from app.db.session import get_db
from app.models.user import User
from app.schemas.common import SuccessResponse
from app.schemas.credentials import ApiKeyCreate, ApiKeyCreated, ApiKeyList, ApiKeyOut, OwnerRequest
from app.services.credentials import ApiKeyManager, ApiKeyParams

router = APIRouter(prefix="/keys", tags=["api-keys"], dependencies=[Depends(rate_limit("api"))])


@router.get("", response_model=ApiKeyList)
def list_keys(
    user_id: int = Query(alias="userId"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_same_user(current_user, user_id)
    keys = ApiKeyManager(db).list(current_user)
    return ApiKeyList(keys=[ApiKeyOut.model_validate(k) for k in keys])


@router.post("", response_model=ApiKeyCreated, status_code=status.HTTP_201_CREATED)
def create_key(
    payload: ApiKeyCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_same_user(current_user, payload.user_id)
    result = ApiKeyManager(db).create(
        current_user,
        ApiKeyParams(
            name=payload.name,
            permissions=tuple(payload.permissions),
            expires_in_days=payload.expires_in_days,
        ),
    )
    return ApiKeyCreated(
        api_key=ApiKeyOut.model_validate(result.record),
        full_key=result.plaintext.reveal(),
    )


@router.patch("/{key_id}", response_model=ApiKeyOut)
def toggle_key(
    key_id: str,
    payload: OwnerRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_same_user(current_user, payload.user_id)
    record = ApiKeyManager(db).toggle_active(current_user, key_id)
    return ApiKeyOut.model_validate(record)


@router.delete("/{key_id}", response_model=SuccessResponse)
def revoke_key(
    key_id: str,
    user_id: int = Query(alias="userId"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_same_user(current_user, user_id)
    ApiKeyManager(db).revoke(current_user, key_id)
    return SuccessResponse(message="API key revoked")
