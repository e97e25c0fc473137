from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Header, UploadFile, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.api.deps import rate_limit, schedule_webhook_event
from app.core.errors import InvalidRequest
from app.core.security import get_current_user
from app.db.session import get_db
from app.models.user import User
from app.schemas.transfers import (
    BundleRequest,
    GateViewOut,
    TransferCreate,
    TransferFileOut,
    TransferOut,
    VerifyPasswordRequest,
    VerifyPasswordResponse,
)
from app.services.access_gate import AccessGate
from app.services.custodian import TransferEncryptionCustodian
from app.services.transfers import TransferService

router = APIRouter(tags=["transfers"])

MAX_UPLOAD_BYTES = 100 * 1024 * 1024


@router.post(
    "/transfers",
    response_model=TransferOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("api"))],
)
def create_transfer(
    payload: TransferCreate,
    background: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    transfer = TransferService(db).create(
        current_user.id,
        title=payload.title,
        password=payload.password,
        expires_in_days=payload.expires_in_days,
    )
    schedule_webhook_event(
        background,
        db,
        current_user.id,
        "transfer.created",
        {"transferId": transfer.id, "title": transfer.title, "expiresAt": transfer.expires_at.isoformat()},
    )
    return TransferOut.model_validate(transfer)


@router.post(
    "/transfers/{transfer_id}/files",
    response_model=TransferFileOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("api"))],
)
async def upload_file(
    transfer_id: str,
    background: BackgroundTasks,
    file: UploadFile = File(...),
    encrypt: bool = Form(True),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    data = await file.read(MAX_UPLOAD_BYTES + 1)
    if len(data) > MAX_UPLOAD_BYTES:
        raise InvalidRequest("File too large")

    record = TransferService(db).add_file(
        current_user.id,
        transfer_id,
        filename=file.filename or "file",
        data=data,
        mime_type=file.content_type,
        encrypt=encrypt,
    )
    schedule_webhook_event(
        background,
        db,
        current_user.id,
        "file.uploaded",
        {"transferId": transfer_id, "fileId": record.id, "fileName": record.original_name, "size": record.size},
    )
    return TransferFileOut.model_validate(record)


@router.get("/transfer/{transfer_id}/access", response_model=GateViewOut, dependencies=[Depends(rate_limit("api"))])
def open_gate(
    transfer_id: str,
    x_transfer_access: str | None = Header(default=None),
    db: Session = Depends(get_db),
):
    view = AccessGate(db).open(transfer_id, session_token=x_transfer_access)
    return GateViewOut(
        transfer_id=view.transfer_id,
        state=view.state.value,
        requires_password=view.requires_password,
        title=view.title,
        expires_at=view.expires_at,
        files=view.files,
    )


@router.post("/transfer/verify-password", response_model=VerifyPasswordResponse, dependencies=[Depends(rate_limit("password"))])
def verify_password(payload: VerifyPasswordRequest, db: Session = Depends(get_db)):
    result = AccessGate(db).unlock(payload.transfer_id, payload.password)
    return VerifyPasswordResponse(valid=True, access_token=result.access_token, expires_in=result.expires_in)


@router.post("/transfer/{transfer_id}/download-zip", dependencies=[Depends(rate_limit("download"))])
def download_zip(
    transfer_id: str,
    background: BackgroundTasks,
    payload: BundleRequest | None = None,
    db: Session = Depends(get_db),
):
    payload = payload or BundleRequest()
    custodian = TransferEncryptionCustodian(db)
    bundle = custodian.stream_bundle(transfer_id, password=payload.password, access_token=payload.access_token)

    schedule_webhook_event(
        background,
        db,
        bundle.owner_id,
        "transfer.downloaded",
        {"transferId": transfer_id, "files": bundle.file_count},
    )
    return StreamingResponse(
        bundle.chunks,
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{bundle.file_name}"',
            "Cache-Control": "no-cache",
        },
    )
