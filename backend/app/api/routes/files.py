from __future__ import annotations

from urllib.parse import quote

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from app.api.deps import rate_limit, schedule_webhook_event
from app.core.errors import Forbidden, NotFound
from app.db.session import get_db
from app.models.transfer import Transfer
from app.schemas.transfers import DownloadUrlRequest, DownloadUrlResponse
from app.services.custodian import TransferEncryptionCustodian
from app.services.storage import ObjectNotFound, get_store

router = APIRouter(prefix="/files", tags=["files"])


@router.post(
    "/download-url",
    response_model=DownloadUrlResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(rate_limit("download"))],
)
def download_url(
    payload: DownloadUrlRequest,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
):
    grant = TransferEncryptionCustodian(db).authorize_download(
        payload.transfer_id,
        payload.file_id,
        password=payload.password,
        access_token=payload.access_token,
    )

    owner_id = db.get(Transfer, payload.transfer_id).owner_id
    schedule_webhook_event(
        background,
        db,
        owner_id,
        "file.downloaded",
        {"transferId": payload.transfer_id, "fileId": payload.file_id, "fileName": grant.file_name},
    )
    return DownloadUrlResponse(**grant.to_dict())


@router.get("/raw/{path:path}", dependencies=[Depends(rate_limit("download"))])
def raw_object(
    path: str,
    expires: int = Query(...),
    sig: str = Query(..., min_length=64, max_length=64),
    filename: str | None = Query(default=None, max_length=255),
):
    """Serve stored bytes behind a signed, expiring link. Encrypted files stay ciphertext."""
    store = get_store()
    if not store.verify_presigned(path, expires, sig):
        raise Forbidden("Invalid or expired download link")

    try:
        data = store.get(path)
    except (ObjectNotFound, ValueError):
        raise NotFound("File not found")

    headers = {"Cache-Control": "no-store"}
    if filename:
        headers["Content-Disposition"] = f"attachment; filename*=UTF-8''{quote(filename)}"
    return Response(content=data, media_type="application/octet-stream", headers=headers)
