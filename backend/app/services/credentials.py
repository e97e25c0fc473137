"""
Lifecycle of long-lived, user-held credentials: API keys and webhook secrets.

Both kinds share one surface (create / list / get / revoke / toggle_active /
record_usage). The plaintext comes back exactly once, inside the
CreationResult of create(); afterwards only the display prefix exists.
"""
from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Generic, Optional, Sequence, TypeVar
from urllib.parse import urlparse

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.errors import Forbidden, ForbiddenPlan, InvalidCredential, InvalidRequest, NotFound
from app.crypto.signing import derive_signing_key
from app.models.credential import ApiKey, Webhook
from app.models.user import User
from app.security.envelope import open_sealed, seal, webhook_aad
from app.security.secret_codec import (
    API_KEY_PREFIX,
    DISPLAY_PREFIX_LEN,
    OneTimeValue,
    SecretCodec,
    SecretKind,
    get_codec,
)
from app.utils.datetime import utcnow

logger = structlog.get_logger()

API_KEY_PERMISSIONS = ("read", "write", "delete")
DEFAULT_API_KEY_PERMISSIONS = ("read", "write")

WEBHOOK_EVENTS = (
    "transfer.created",
    "transfer.downloaded",
    "transfer.expired",
    "transfer.deleted",
    "file.uploaded",
    "file.downloaded",
)

NAME_MAX_LEN = 50

R = TypeVar("R")


class UsageOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class CreationResult(Generic[R]):
    record: R
    plaintext: OneTimeValue


@dataclass(frozen=True)
class ApiKeyParams:
    name: str
    permissions: Sequence[str] = DEFAULT_API_KEY_PERMISSIONS
    expires_in_days: Optional[int] = None


@dataclass(frozen=True)
class WebhookParams:
    name: str
    url: str
    events: Sequence[str]


def _clean_name(name: str) -> str:
    name = (name or "").strip()
    if not 1 <= len(name) <= NAME_MAX_LEN:
        raise InvalidRequest(f"Name must be 1-{NAME_MAX_LEN} characters")
    return name


def _clean_url(url: str) -> str:
    parsed = urlparse(url or "")
    if parsed.scheme != "https" or not parsed.netloc:
        raise InvalidRequest("Webhook URL must use https")
    return url


def _clean_events(events: Sequence[str]) -> list[str]:
    if not events:
        raise InvalidRequest("At least one event is required")
    unknown = [e for e in events if e not in WEBHOOK_EVENTS]
    if unknown:
        raise InvalidRequest(f"Unknown events: {', '.join(unknown)}")
    return list(dict.fromkeys(events))


class CredentialLifecycleManager(ABC, Generic[R]):
    model: type
    kind: SecretKind
    allowed_plans: tuple[str, ...]
    label: str
    log_name: str

    def __init__(self, db: Session, codec: Optional[SecretCodec] = None, settings: Optional[Settings] = None):
        self.db = db
        self.codec = codec or get_codec()
        self.settings = settings or get_settings()

    @property
    @abstractmethod
    def quota(self) -> int: ...

    @abstractmethod
    def _build(self, owner: User, params, plaintext: str, prefix: str) -> R: ...

    @abstractmethod
    def record_usage(self, record_id: str, outcome: UsageOutcome, **details) -> None: ...

    def require_plan(self, owner: User) -> None:
        if owner.plan not in self.allowed_plans:
            raise ForbiddenPlan(f"{self.label} requires plan: {' or '.join(self.allowed_plans)}")

    def _live(self):
        return select(self.model).where(self.model.revoked_at.is_(None))

    def list(self, owner: User) -> list[R]:
        self.require_plan(owner)
        stmt = self._live().where(self.model.owner_id == owner.id).order_by(self.model.created_at.desc())
        return list(self.db.execute(stmt).scalars().all())

    def get(self, owner: User, record_id: str) -> R:
        record = self.db.get(self.model, record_id)
        if record is None or record.owner_id != owner.id or record.revoked_at is not None:
            raise NotFound(f"{self.label} not found")
        return record

    def create(self, owner: User, params) -> CreationResult[R]:
        self.require_plan(owner)

        count = self.db.execute(
            select(func.count()).select_from(self.model).where(
                self.model.owner_id == owner.id,
                self.model.revoked_at.is_(None),
            )
        ).scalar_one()
        if count >= self.quota:
            raise InvalidRequest(f"Limit of {self.quota} reached")

        plaintext, prefix = self.codec.generate(self.kind)
        record = self._build(owner, params, plaintext, prefix)
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)

        logger.info(f"{self.log_name}.created", owner_id=owner.id, record_id=record.id, prefix=prefix)
        return CreationResult(record=record, plaintext=OneTimeValue(plaintext))

    def revoke(self, owner: User, record_id: str) -> None:
        record = self.get(owner, record_id)
        record.revoked_at = utcnow()
        record.is_active = False
        self.db.commit()
        logger.info(f"{self.log_name}.revoked", owner_id=owner.id, record_id=record_id)

    def toggle_active(self, owner: User, record_id: str) -> R:
        record = self.get(owner, record_id)
        record.is_active = not record.is_active
        if record.is_active:
            self._on_reactivate(record)
        self.db.commit()
        self.db.refresh(record)
        logger.info(f"{self.log_name}.toggled", owner_id=owner.id, record_id=record_id, is_active=record.is_active)
        return record

    def _on_reactivate(self, record: R) -> None:
        pass


class ApiKeyManager(CredentialLifecycleManager[ApiKey]):
    model = ApiKey
    kind = SecretKind.API_KEY
    allowed_plans = ("pro", "business")
    label = "API key"
    log_name = "api_key"

    @property
    def quota(self) -> int:
        return self.settings.MAX_API_KEYS

    def _build(self, owner: User, params: ApiKeyParams, plaintext: str, prefix: str) -> ApiKey:
        permissions = list(dict.fromkeys(params.permissions or DEFAULT_API_KEY_PERMISSIONS))
        if any(p not in API_KEY_PERMISSIONS for p in permissions):
            raise InvalidRequest("Invalid permissions")

        expires_at = None
        if params.expires_in_days is not None:
            if params.expires_in_days < 1:
                raise InvalidRequest("expiresInDays must be positive")
            expires_at = utcnow() + timedelta(days=params.expires_in_days)

        return ApiKey(
            owner_id=owner.id,
            name=_clean_name(params.name),
            key_prefix=prefix,
            key_hash=self.codec.hash(plaintext),
            permissions=permissions,
            rate_limit=self.settings.API_KEY_RATE_LIMIT,
            expires_at=expires_at,
        )

    def authenticate(self, plaintext: Optional[str], permission: Optional[str] = None) -> ApiKey:
        """
        Resolve a presented key. Lookup is by display prefix, then argon2.

        A miss still pays for one verification. Usage is counted only for
        keys that pass every check, including `permission` when given.
        """
        plaintext = plaintext or ""
        candidates: list[ApiKey] = []
        if plaintext.startswith(API_KEY_PREFIX):
            stmt = select(ApiKey).where(ApiKey.key_prefix == plaintext[:DISPLAY_PREFIX_LEN])
            candidates = list(self.db.execute(stmt).scalars().all())

        match = None
        for candidate in candidates:
            if self.codec.verify(plaintext, candidate.key_hash):
                match = candidate
        if not candidates:
            self.codec.verify(plaintext, None)

        if match is None:
            raise InvalidCredential("Invalid API key")
        if match.revoked_at is not None or not match.is_active:
            logger.info("api_key.rejected", record_id=match.id, reason="inactive")
            raise InvalidCredential("API key is disabled")
        if match.expires_at is not None and utcnow() >= match.expires_at:
            logger.info("api_key.rejected", record_id=match.id, reason="expired")
            raise InvalidCredential("API key has expired")
        if permission is not None and permission not in (match.permissions or []):
            logger.info("api_key.rejected", record_id=match.id, reason="permission", permission=permission)
            raise Forbidden(f"API key lacks '{permission}' permission")

        self.record_usage(match.id, UsageOutcome.SUCCESS)
        self.db.refresh(match)
        return match

    def usage_summary(self, owner_id: int) -> dict:
        # revoked keys keep the calls they made
        row = self.db.execute(
            select(
                func.coalesce(func.sum(ApiKey.usage_count), 0),
                func.count(ApiKey.id).filter(ApiKey.is_active.is_(True), ApiKey.revoked_at.is_(None)),
            ).where(ApiKey.owner_id == owner_id)
        ).one()
        return {"total_calls": row[0], "active_keys": row[1]}

    def record_usage(self, record_id: str, outcome: UsageOutcome, **details) -> None:
        if outcome is not UsageOutcome.SUCCESS:
            return
        self.db.execute(
            update(ApiKey)
            .where(ApiKey.id == record_id)
            .values(usage_count=ApiKey.usage_count + 1, last_used_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()


class WebhookManager(CredentialLifecycleManager[Webhook]):
    model = Webhook
    kind = SecretKind.WEBHOOK_SECRET
    allowed_plans = ("business",)
    label = "Webhook"
    log_name = "webhook"

    @property
    def quota(self) -> int:
        return self.settings.MAX_WEBHOOKS

    def _build(self, owner: User, params: WebhookParams, plaintext: str, prefix: str) -> Webhook:
        webhook_id = uuid.uuid4().hex
        return Webhook(
            id=webhook_id,
            owner_id=owner.id,
            name=_clean_name(params.name),
            url=_clean_url(params.url),
            events=_clean_events(params.events),
            secret_prefix=prefix,
            signing_key_ciphertext=seal(derive_signing_key(plaintext), webhook_aad(webhook_id)),
        )

    def update(
        self,
        owner: User,
        record_id: str,
        name: Optional[str] = None,
        url: Optional[str] = None,
        events: Optional[Sequence[str]] = None,
    ) -> Webhook:
        record = self.get(owner, record_id)
        if name is not None:
            record.name = _clean_name(name)
        if url is not None:
            record.url = _clean_url(url)
        if events is not None:
            record.events = _clean_events(events)
        self.db.commit()
        self.db.refresh(record)
        logger.info("webhook.updated", owner_id=owner.id, record_id=record_id)
        return record

    def signing_key(self, record: Webhook) -> bytes:
        return open_sealed(record.signing_key_ciphertext, webhook_aad(record.id))

    def subscribed(self, owner_id: int, event: str) -> list[Webhook]:
        stmt = self._live().where(Webhook.owner_id == owner_id, Webhook.is_active.is_(True))
        return [w for w in self.db.execute(stmt).scalars().all() if event in (w.events or [])]

    def _on_reactivate(self, record: Webhook) -> None:
        record.failure_count = 0

    def record_usage(self, record_id: str, outcome: UsageOutcome, status_code: Optional[int] = None, **details) -> None:
        now = utcnow()
        if outcome is UsageOutcome.SUCCESS:
            values = {"failure_count": 0, "last_status": status_code, "last_triggered_at": now}
        else:
            threshold = self.settings.WEBHOOK_FAILURE_THRESHOLD
            values = {
                "failure_count": Webhook.failure_count + 1,
                "is_active": case((Webhook.failure_count + 1 >= threshold, False), else_=Webhook.is_active),
                "last_status": status_code,
                "last_triggered_at": now,
            }
        self.db.execute(
            update(Webhook)
            .where(Webhook.id == record_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
