from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


MessageDirection = Literal["inbound", "outbound"]
MessageChannel = Literal["sms", "voice"]
MessageStatus = Literal["queued", "sent", "error", "received"]


class SendMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    to: str | None = None
    from_: str | None = Field(default=None, alias="from")
    body: str | None = None


class SendMessageResponse(BaseModel):
    ok: bool
    message_id: UUID
    provider_id: str | None = None
    error: str | None = None
    code: str | None = None


class MessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    provider_account_id: UUID | None
    direction: MessageDirection | str
    channel: MessageChannel | str
    to_address: str
    from_address: str | None
    body: str
    status: MessageStatus | str
    provider: str | None
    provider_id: str | None
    error: str | None
    created_at: datetime
    updated_at: datetime | None


class ProviderAccountCreate(BaseModel):
    provider_id: str | None = None
    label: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)
    secrets: dict[str, Any] | None = None
    is_default: bool | None = None


class ProviderAccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    provider_id: str
    label: str | None
    meta: dict[str, Any]
    is_default: bool
    created_at: datetime


class PhoneNumberCreate(BaseModel):
    e164: str | None = None
    provider_account_id: UUID | None = None


class PhoneNumberRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    e164: str
    organization_id: UUID
    provider_account_id: UUID | None
    verified: bool
    created_at: datetime


class WebhookAck(BaseModel):
    ok: bool = True
    ignored: bool | None = None
    message_id: UUID | None = None
