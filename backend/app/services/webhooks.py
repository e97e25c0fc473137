"""
Outbound webhook delivery.

Each POST carries the JSON body {event, timestamp, data} and an
X-Webhook-Signature header (see app.crypto.signing). Outcomes feed back into
WebhookManager.record_usage, which owns the failure counter. Delivery never
raises into the caller; failures are logged and counted.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import timezone
from typing import Any, Callable, Optional

import httpx
import structlog
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.crypto.signing import sign_payload
from app.models.credential import Webhook
from app.models.user import User
from app.security.envelope import EnvelopeError
from app.services.credentials import UsageOutcome, WebhookManager
from app.utils.datetime import utcnow

logger = structlog.get_logger()

USER_AGENT = "FlyFile-Webhooks/1.0"
TEST_EVENT = "webhook.test"

_transport: Optional[httpx.BaseTransport] = None


def set_transport(transport: Optional[httpx.BaseTransport]) -> None:
    """Swap the HTTP transport (tests use httpx.MockTransport)."""
    global _transport
    _transport = transport


@dataclass(frozen=True)
class DeliveryResult:
    webhook_id: str
    event: str
    ok: bool
    status_code: int
    error: Optional[str] = None


def build_payload(event: str, data: dict[str, Any]) -> bytes:
    payload = {
        "event": event,
        "timestamp": utcnow().replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z"),
        "data": data,
    }
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


class WebhookDispatcher:
    def __init__(
        self,
        db: Session,
        manager: Optional[WebhookManager] = None,
        transport: Optional[httpx.BaseTransport] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.manager = manager or WebhookManager(db, settings=self.settings)
        self.transport = transport or _transport

    def deliver(self, webhook: Webhook, event: str, data: dict[str, Any]) -> DeliveryResult:
        log = logger.bind(webhook_id=webhook.id, event=event)
        body = build_payload(event, data)

        try:
            signing_key = self.manager.signing_key(webhook)
        except EnvelopeError:
            log.error("webhook.delivery.unsigned", reason="signing key unreadable")
            self.manager.record_usage(webhook.id, UsageOutcome.FAILURE, status_code=0)
            return DeliveryResult(webhook.id, event, ok=False, status_code=0, error="signing key unreadable")

        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": sign_payload(signing_key, body),
            "X-Webhook-Event": event,
            "User-Agent": USER_AGENT,
        }

        status_code, error = 0, None
        try:
            with httpx.Client(timeout=self.settings.WEBHOOK_TIMEOUT_SECONDS, transport=self.transport) as client:
                response = client.post(webhook.url, content=body, headers=headers)
            status_code = response.status_code
            ok = response.is_success
            if not ok:
                error = f"HTTP {status_code}"
        except httpx.HTTPError as e:
            ok = False
            error = f"{type(e).__name__}: {e}"

        self.manager.record_usage(
            webhook.id,
            UsageOutcome.SUCCESS if ok else UsageOutcome.FAILURE,
            status_code=status_code,
        )
        if ok:
            log.info("webhook.delivery.succeeded", status=status_code)
        else:
            log.warning("webhook.delivery.failed", status=status_code, error=error)
        return DeliveryResult(webhook.id, event, ok=ok, status_code=status_code, error=error)

    def trigger(self, owner_id: int, event: str, data: dict[str, Any]) -> list[DeliveryResult]:
        return [self.deliver(w, event, data) for w in self.manager.subscribed(owner_id, event)]

    def send_test(self, owner: User, webhook_id: str) -> DeliveryResult:
        """Manual delivery; works on deactivated registrations too."""
        webhook = self.manager.get(owner, webhook_id)
        return self.deliver(webhook, TEST_EVENT, {"webhookId": webhook.id, "message": "Test delivery from FlyFile"})


def dispatch_event(session_factory: Callable[[], Session], owner_id: int, event: str, data: dict[str, Any]) -> None:
    """BackgroundTasks entry point; runs after the response with its own session."""
    db = session_factory()
    try:
        WebhookDispatcher(db).trigger(owner_id, event, data)
    except Exception:
        logger.exception("webhook.dispatch.crashed", owner_id=owner_id, event=event)
    finally:
        db.close()
