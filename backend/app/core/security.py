from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import jwt, JWTError

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import Forbidden, InvalidCredential
from app.db.session import get_db
from app.models.user import User


IDENTITY_SCOPE = "identity"


def create_access_token(
    subject: str,
    extra: dict | None = None,
    expires_minutes: int | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    minutes = settings.JWT_EXPIRE_MINUTES if expires_minutes is None else expires_minutes
    payload = {
        "sub": subject,
        "scope": IDENTITY_SCOPE,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=minutes)).timestamp()),
    }
    if extra:
        payload.update(extra)

    return jwt.encode(
        payload,
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


def decode_access_token(token: str) -> dict | None:
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        return None


_security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_security),
    db: Session = Depends(get_db),
) -> User:
    """
    Dependency: resolve the caller from `Authorization: Bearer <JWT>`.

    Only identity-scoped tokens count; transfer access tokens share the
    signing key but carry a different scope.
    """
    if credentials is None:
        raise InvalidCredential("Missing authentication credentials")

    payload = decode_access_token(credentials.credentials)
    if not payload or payload.get("scope") != IDENTITY_SCOPE or not payload.get("sub"):
        raise InvalidCredential("Invalid authentication credentials")

    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise InvalidCredential("Invalid authentication credentials")

    user = db.get(User, user_id)
    if not user:
        raise InvalidCredential("Invalid authentication credentials")

    return user


def ensure_same_user(current_user: User, user_id: int | None) -> None:
    """Body/query `userId` must name the authenticated caller."""
    if user_id is not None and user_id != current_user.id:
        raise Forbidden()
