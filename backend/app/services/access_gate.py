"""
Password gate in front of a protected transfer.

    locked --submit--> verifying --ok--> unlocked
                           |
                           +--fail--> locked

Transfers without a password go straight from locked to unlocked. Nothing
is remembered server-side between visits: a visit is unlocked only if it
re-presents a session token, and that token is checked against the
transfer's current password hash every time.
"""
from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.errors import Expired, IncorrectPassword, InvalidRequest, NotFound
from app.core.security import create_access_token, decode_access_token
from app.models.transfer import Transfer
from app.security.secret_codec import SecretCodec, get_codec
from app.utils.datetime import utcnow

logger = structlog.get_logger()

ACCESS_SCOPE = "transfer_access"


class GateState(str, Enum):
    LOCKED = "locked"
    VERIFYING = "verifying"
    UNLOCKED = "unlocked"


_TRANSITIONS = {
    (GateState.LOCKED, "submit"): GateState.VERIFYING,
    (GateState.LOCKED, "open"): GateState.UNLOCKED,
    (GateState.VERIFYING, "ok"): GateState.UNLOCKED,
    (GateState.VERIFYING, "fail"): GateState.LOCKED,
}


def transition(state: GateState, event: str) -> GateState:
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidRequest(f"cannot {event} a {state.value} gate")


@dataclass(frozen=True)
class GateView:
    transfer_id: str
    state: GateState
    requires_password: bool
    title: Optional[str] = None
    expires_at: Optional[datetime] = None
    files: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class UnlockResult:
    # None for transfers that have no password to bind to
    access_token: Optional[str]
    expires_in: int
    view: GateView

    def __repr__(self) -> str:
        return f"UnlockResult(access_token=<redacted>, expires_in={self.expires_in})"


def _password_binding(codec: SecretCodec, password_hash: str) -> str:
    # changing the password invalidates outstanding tokens
    return codec.fingerprint(password_hash)[:32]


def issue_session_token(transfer: Transfer, codec: Optional[SecretCodec] = None) -> tuple[str, int]:
    codec = codec or get_codec()
    minutes = get_settings().ACCESS_SESSION_MINUTES
    token = create_access_token(
        subject=transfer.id,
        extra={"scope": ACCESS_SCOPE, "pwd": _password_binding(codec, transfer.password_hash or "")},
        expires_minutes=minutes,
    )
    return token, minutes * 60


def session_token_valid(token: Optional[str], transfer: Transfer, codec: Optional[SecretCodec] = None) -> bool:
    if not token or transfer.password_hash is None:
        return False
    payload = decode_access_token(token)
    if not payload or payload.get("scope") != ACCESS_SCOPE or payload.get("sub") != transfer.id:
        return False
    codec = codec or get_codec()
    bound = str(payload.get("pwd", ""))
    return hmac.compare_digest(bound, _password_binding(codec, transfer.password_hash))


class AccessGate:
    def __init__(self, db: Session, codec: Optional[SecretCodec] = None):
        self.db = db
        self.codec = codec or get_codec()

    def _live_transfer(self, transfer_id: str) -> Transfer:
        transfer = self.db.get(Transfer, transfer_id)
        if transfer is None:
            raise NotFound("Transfer not found")
        if utcnow() >= transfer.expires_at:
            raise Expired("Transfer has expired")
        return transfer

    def _view(self, transfer: Transfer, state: GateState) -> GateView:
        if state is not GateState.UNLOCKED:
            return GateView(transfer_id=transfer.id, state=state, requires_password=transfer.is_protected)
        return GateView(
            transfer_id=transfer.id,
            state=state,
            requires_password=transfer.is_protected,
            title=transfer.title,
            expires_at=transfer.expires_at,
            files=[
                {
                    "id": f.id,
                    "name": f.original_name,
                    "size": f.size,
                    "mimeType": f.mime_type,
                    "isEncrypted": f.is_encrypted,
                }
                for f in transfer.files
            ],
        )

    def open(self, transfer_id: str, session_token: Optional[str] = None) -> GateView:
        transfer = self._live_transfer(transfer_id)
        if not transfer.is_protected or session_token_valid(session_token, transfer, self.codec):
            return self._view(transfer, transition(GateState.LOCKED, "open"))
        return self._view(transfer, GateState.LOCKED)

    def unlock(self, transfer_id: str, password: str) -> UnlockResult:
        """
        Trade a password for a short-lived session token.

        An unknown transfer id runs the same dummy verification as a wrong
        password and fails with the same error.
        """
        transfer = self.db.get(Transfer, transfer_id)
        state = transition(GateState.LOCKED, "submit")

        digest = transfer.password_hash if transfer is not None else None
        ok = self.codec.verify(password, digest)
        if transfer is not None and not transfer.is_protected:
            ok = True
        if transfer is None or not ok:
            state = transition(state, "fail")
            logger.info("access_gate.unlock.rejected", transfer_id=transfer_id, state=state.value)
            raise IncorrectPassword()

        if utcnow() >= transfer.expires_at:
            raise Expired("Transfer has expired")

        state = transition(state, "ok")
        token, expires_in = None, 0
        if transfer.is_protected:
            token, expires_in = issue_session_token(transfer, self.codec)
        logger.info("access_gate.unlocked", transfer_id=transfer_id)
        return UnlockResult(access_token=token, expires_in=expires_in, view=self._view(transfer, state))
