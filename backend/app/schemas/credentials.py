from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import Field, RootModel, field_validator

from app.schemas.common import RequestModel, ResponseModel
from app.security.sanitizer import InputSanitizer

Permission = Literal["read", "write", "delete"]
WebhookEvent = Literal[
    "transfer.created",
    "transfer.downloaded",
    "transfer.expired",
    "transfer.deleted",
    "file.uploaded",
    "file.downloaded",
]


def _label(v: str) -> str:
    v = InputSanitizer.sanitize_label(v, max_length=50)
    if not v:
        raise ValueError("Name is required (1-50 characters)")
    return v


# -- API keys ---------------------------------------------------------------

class ApiKeyCreate(RequestModel):
    user_id: int
    name: str = Field(min_length=1, max_length=50)
    permissions: list[Permission] = Field(default_factory=lambda: ["read", "write"], min_length=1)
    expires_in_days: int | None = Field(default=None, ge=1, le=3650)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _label(v)


class OwnerRequest(RequestModel):
    user_id: int


class ApiKeyOut(ResponseModel):
    """Listing shape. Never carries the key or its hash."""
    id: str
    name: str
    key_prefix: str
    permissions: list[str]
    is_active: bool
    usage_count: int
    rate_limit: int
    last_used_at: datetime | None = None
    created_at: datetime
    expires_at: datetime | None = None


class ApiKeyList(ResponseModel):
    success: bool = True
    keys: list[ApiKeyOut]


class ApiKeyCreated(ResponseModel):
    success: bool = True
    api_key: ApiKeyOut
    full_key: str
    message: str = "API key created. Store it now; it will not be shown again."


# -- webhooks ---------------------------------------------------------------

class WebhookCreate(RequestModel):
    user_id: int
    name: str = Field(min_length=1, max_length=50)
    url: str = Field(min_length=9, max_length=2048)
    events: list[WebhookEvent] = Field(min_length=1)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _label(v)

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith("https://"):
            raise ValueError("Webhook URL must use https")
        return v


class WebhookToggle(RequestModel):
    action: Literal["toggle"]
    user_id: int


class WebhookUpdate(RequestModel):
    action: Literal["update"]
    user_id: int
    name: str | None = Field(default=None, min_length=1, max_length=50)
    url: str | None = Field(default=None, min_length=9, max_length=2048)
    events: list[WebhookEvent] | None = Field(default=None, min_length=1)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        return None if v is None else _label(v)

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith("https://"):
            raise ValueError("Webhook URL must use https")
        return v


class WebhookPatch(RootModel[Union[WebhookToggle, WebhookUpdate]]):
    """PATCH body, dispatched on `action`."""
    root: Annotated[Union[WebhookToggle, WebhookUpdate], Field(discriminator="action")]


class WebhookOut(ResponseModel):
    id: str
    name: str
    url: str
    secret_prefix: str
    events: list[str]
    is_active: bool
    failure_count: int
    last_status: int | None = None
    last_triggered_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class WebhookList(ResponseModel):
    success: bool = True
    webhooks: list[WebhookOut]


class WebhookCreated(ResponseModel):
    success: bool = True
    webhook: WebhookOut
    full_secret: str
    message: str = "Webhook created. Store the secret now; it will not be shown again."


class WebhookSaved(ResponseModel):
    success: bool = True
    webhook: WebhookOut


class WebhookTestResult(ResponseModel):
    success: bool
    status_code: int
    error: str | None = None
