from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import rate_limit
from app.core.security import ensure_same_user, get_current_user
from app.db.session import get_db
from app.models.user import User
from app.schemas.common import SuccessResponse
from app.schemas.credentials import (
    OwnerRequest,
    WebhookCreate,
    WebhookCreated,
    WebhookList,
    WebhookOut,
    WebhookPatch,
    WebhookSaved,
    WebhookTestResult,
    WebhookToggle,
)
from app.services.credentials import WebhookManager, WebhookParams
from app.services.webhooks import WebhookDispatcher

router = APIRouter(prefix="/webhooks", tags=["webhooks"], dependencies=[Depends(rate_limit("api"))])


@router.get("", response_model=WebhookList)
def list_webhooks(
    user_id: int = Query(alias="userId"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_same_user(current_user, user_id)
    hooks = WebhookManager(db).list(current_user)
    return WebhookList(webhooks=[WebhookOut.model_validate(w) for w in hooks])


@router.post("", response_model=WebhookCreated, status_code=status.HTTP_201_CREATED)
def create_webhook(
    payload: WebhookCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_same_user(current_user, payload.user_id)
    result = WebhookManager(db).create(
        current_user,
        WebhookParams(name=payload.name, url=payload.url, events=tuple(payload.events)),
    )
    return WebhookCreated(
        webhook=WebhookOut.model_validate(result.record),
        full_secret=result.plaintext.reveal(),
    )


@router.patch("/{webhook_id}", response_model=WebhookSaved)
def patch_webhook(
    webhook_id: str,
    patch: WebhookPatch,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    payload = patch.root
    ensure_same_user(current_user, payload.user_id)
    manager = WebhookManager(db)
    if isinstance(payload, WebhookToggle):
        record = manager.toggle_active(current_user, webhook_id)
    else:
        record = manager.update(
            current_user,
            webhook_id,
            name=payload.name,
            url=payload.url,
            events=payload.events,
        )
    return WebhookSaved(webhook=WebhookOut.model_validate(record))


@router.delete("/{webhook_id}", response_model=SuccessResponse)
def revoke_webhook(
    webhook_id: str,
    user_id: int = Query(alias="userId"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_same_user(current_user, user_id)
    WebhookManager(db).revoke(current_user, webhook_id)
    return SuccessResponse(message="Webhook deleted")


@router.post("/{webhook_id}/test", response_model=WebhookTestResult)
def test_webhook(
    webhook_id: str,
    payload: OwnerRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_same_user(current_user, payload.user_id)
    result = WebhookDispatcher(db).send_test(current_user, webhook_id)
    return WebhookTestResult(success=result.ok, status_code=result.status_code, error=result.error)
