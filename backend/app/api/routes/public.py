"""Public REST API, authenticated with `Authorization: Bearer fly_...` keys."""
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import rate_limit, require_api_key, schedule_webhook_event
from app.core.config import get_settings
from app.db.session import get_db
from app.models.credential import ApiKey
from app.models.user import User
from app.schemas.common import SuccessResponse
from app.schemas.transfers import TransferCreate, TransferList, TransferOut, UsageOut
from app.services.credentials import ApiKeyManager
from app.services.transfers import TransferService

router = APIRouter(prefix="/v1", tags=["public-api"], dependencies=[Depends(rate_limit("api"))])


@router.get("/transfers", response_model=TransferList)
def list_transfers(
    limit: int = Query(default=50, ge=1, le=100),
    api_key: ApiKey = Depends(require_api_key("read")),
    db: Session = Depends(get_db),
):
    transfers = TransferService(db).list_owned(api_key.owner_id, limit=limit)
    return TransferList(transfers=[TransferOut.model_validate(t) for t in transfers])


@router.post("/transfers", response_model=TransferOut, status_code=status.HTTP_201_CREATED)
def create_transfer(
    payload: TransferCreate,
    background: BackgroundTasks,
    api_key: ApiKey = Depends(require_api_key("write")),
    db: Session = Depends(get_db),
):
    transfer = TransferService(db).create(
        api_key.owner_id,
        title=payload.title,
        password=payload.password,
        expires_in_days=payload.expires_in_days,
    )
    schedule_webhook_event(
        background,
        db,
        api_key.owner_id,
        "transfer.created",
        {"transferId": transfer.id, "title": transfer.title, "expiresAt": transfer.expires_at.isoformat()},
    )
    return TransferOut.model_validate(transfer)


@router.get("/transfers/{transfer_id}", response_model=TransferOut)
def get_transfer(
    transfer_id: str,
    api_key: ApiKey = Depends(require_api_key("read")),
    db: Session = Depends(get_db),
):
    return TransferOut.model_validate(TransferService(db).get_owned(api_key.owner_id, transfer_id))


@router.delete("/transfers/{transfer_id}", response_model=SuccessResponse)
def delete_transfer(
    transfer_id: str,
    background: BackgroundTasks,
    api_key: ApiKey = Depends(require_api_key("delete")),
    db: Session = Depends(get_db),
):
    TransferService(db).delete(api_key.owner_id, transfer_id)
    schedule_webhook_event(background, db, api_key.owner_id, "transfer.deleted", {"transferId": transfer_id})
    return SuccessResponse(message="Transfer deleted")


@router.get("/usage", response_model=UsageOut)
def get_usage(
    api_key: ApiKey = Depends(require_api_key("read")),
    db: Session = Depends(get_db),
):
    settings = get_settings()
    owner = db.get(User, api_key.owner_id)
    transfers = TransferService(db).usage_summary(api_key.owner_id)
    keys = ApiKeyManager(db).usage_summary(api_key.owner_id)
    return UsageOut(
        plan=owner.plan,
        transfers={"total": transfers["total"], "active": transfers["active"]},
        downloads={"total": transfers["downloads"]},
        api={
            "total_calls": keys["total_calls"],
            "active_keys": keys["active_keys"],
            "rate_limit": api_key.rate_limit,
            "max_keys": settings.MAX_API_KEYS,
        },
    )
