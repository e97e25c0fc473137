"""FastAPI dependencies shared by the routers: rate limiting and API-key auth."""
from __future__ import annotations

from typing import Callable

from fastapi import BackgroundTasks, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session, sessionmaker

from app.core.errors import InvalidCredential
from app.db.session import get_db
from app.models.credential import ApiKey
from app.security.rate_limiter import get_rate_limiter
from app.services.credentials import ApiKeyManager
from app.services.webhooks import dispatch_event


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def rate_limit(bucket: str) -> Callable[[Request], None]:
    """Per-client-IP throttle on one of the configured buckets."""

    def _dependency(request: Request) -> None:
        get_rate_limiter().hit(bucket, client_ip(request))

    return _dependency


_api_bearer = HTTPBearer(auto_error=False)


def require_api_key(permission: str) -> Callable[..., ApiKey]:
    """Authenticate `Authorization: Bearer fly_...` and check one permission."""

    def _dependency(
        credentials: HTTPAuthorizationCredentials | None = Depends(_api_bearer),
        db: Session = Depends(get_db),
    ) -> ApiKey:
        if credentials is None:
            raise InvalidCredential("Missing API key")

        api_key = ApiKeyManager(db).authenticate(credentials.credentials, permission=permission)
        get_rate_limiter().hit("api_key", api_key.id, max_attempts=api_key.rate_limit, window_seconds=60)
        return api_key

    return _dependency


def schedule_webhook_event(background: BackgroundTasks, db: Session, owner_id: int, event: str, data: dict) -> None:
    """Queue delivery to the owner's subscribed webhooks for after the response."""
    factory = sessionmaker(bind=db.get_bind(), autoflush=False, expire_on_commit=False)
    background.add_task(dispatch_event, factory, owner_id, event, data)
