from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ghostcrm.core.auth import AuthUser, get_current_user
from ghostcrm.core.database import get_db
from ghostcrm.telecom.context import TelecomContext, get_telecom_context
from ghostcrm.telecom.dispatch import dispatch_service
from ghostcrm.telecom.errors import MissingFieldsError, SignatureInvalidError
from ghostcrm.telecom.membership import Membership, resolve_membership
from ghostcrm.telecom.provisioning import phone_number_service, provider_account_service
from ghostcrm.telecom.schemas import (
    MessageRead,
    PhoneNumberCreate,
    PhoneNumberRead,
    ProviderAccountCreate,
    ProviderAccountRead,
    SendMessageRequest,
    SendMessageResponse,
    WebhookAck,
)
from ghostcrm.telecom.webhooks import (
    parse_telnyx_event,
    parse_twilio_form,
    record_inbound,
    reject,
    signed_request_url,
    twilio_params,
    validate_twilio_signature,
    verify_telnyx_signature,
)


messages_router = APIRouter(prefix="/api/messages", tags=["messages"])
telecom_router = APIRouter(prefix="/api/telecom", tags=["telecom"])
webhooks_router = APIRouter(prefix="/api/telecom", tags=["telecom.webhooks"])


def get_membership(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    organization_header: str | None = Header(default=None, alias="x-organization-id"),
) -> Membership:
    membership = resolve_membership(db, user, organization_header)
    context = getattr(request.state, "context", None)
    if context is not None:
        context.organization_id = str(membership.organization_id)
    return membership


@messages_router.post("/send", response_model=SendMessageResponse)
def send_message(
    payload: SendMessageRequest,
    db: Session = Depends(get_db),
    membership: Membership = Depends(get_membership),
    tctx: TelecomContext = Depends(get_telecom_context),
) -> JSONResponse:
    result = dispatch_service.send_message(
        db,
        tctx,
        organization_id=membership.organization_id,
        actor_id=membership.user_id,
        to=payload.to,
        body=payload.body,
        from_=payload.from_,
    )
    response = SendMessageResponse(
        ok=result.ok,
        message_id=result.message_id,
        provider_id=result.provider_id,
        error=result.error,
        code=result.code,
    )
    return JSONResponse(status_code=result.status_code, content=response.model_dump(mode="json", exclude_none=True))


@messages_router.get("", response_model=list[MessageRead])
def list_messages(
    direction: str | None = Query(default=None, pattern="^(inbound|outbound)$"),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    membership: Membership = Depends(get_membership),
) -> list[MessageRead]:
    rows = dispatch_service.list_messages(db, membership.organization_id, direction=direction, limit=limit)
    return [MessageRead.model_validate(row) for row in rows]


@telecom_router.post("/providers/accounts", response_model=ProviderAccountRead, status_code=status.HTTP_201_CREATED)
def create_provider_account(
    payload: ProviderAccountCreate,
    db: Session = Depends(get_db),
    membership: Membership = Depends(get_membership),
    tctx: TelecomContext = Depends(get_telecom_context),
) -> ProviderAccountRead:
    account = provider_account_service.create_account(db, tctx, membership, payload)
    return ProviderAccountRead.model_validate(account)


@telecom_router.get("/providers/accounts", response_model=list[ProviderAccountRead])
def list_provider_accounts(
    db: Session = Depends(get_db),
    membership: Membership = Depends(get_membership),
) -> list[ProviderAccountRead]:
    accounts = provider_account_service.list_accounts(db, membership.organization_id)
    return [ProviderAccountRead.model_validate(account) for account in accounts]


@telecom_router.post("/phone-numbers", response_model=PhoneNumberRead, status_code=status.HTTP_201_CREATED)
def register_phone_number(
    payload: PhoneNumberCreate,
    db: Session = Depends(get_db),
    membership: Membership = Depends(get_membership),
    tctx: TelecomContext = Depends(get_telecom_context),
) -> PhoneNumberRead:
    number = phone_number_service.register_number(db, tctx, membership, payload)
    return PhoneNumberRead.model_validate(number)


@telecom_router.get("/phone-numbers", response_model=list[PhoneNumberRead])
def list_phone_numbers(
    db: Session = Depends(get_db),
    membership: Membership = Depends(get_membership),
) -> list[PhoneNumberRead]:
    numbers = phone_number_service.list_numbers(db, membership.organization_id)
    return [PhoneNumberRead.model_validate(number) for number in numbers]


@webhooks_router.post("/twilio/inbound-sms", response_model=WebhookAck, response_model_exclude_none=True)
async def twilio_inbound_sms(
    request: Request,
    db: Session = Depends(get_db),
    tctx: TelecomContext = Depends(get_telecom_context),
) -> WebhookAck:
    form = await request.form()
    try:
        validate_twilio_signature(
            tctx.twilio_auth_token,
            signed_request_url(request, tctx.public_base_url),
            twilio_params(form),
            request.headers.get("x-twilio-signature"),
        )
    except SignatureInvalidError as exc:
        reject("twilio", exc)
        raise

    message = await run_in_threadpool(record_inbound, db, parse_twilio_form(form))
    return WebhookAck(ok=True, message_id=message.id)


@webhooks_router.post("/telnyx/inbound-sms", response_model=WebhookAck, response_model_exclude_none=True)
async def telnyx_inbound_sms(
    request: Request,
    db: Session = Depends(get_db),
    tctx: TelecomContext = Depends(get_telecom_context),
) -> WebhookAck:
    raw_body = await request.body()
    try:
        verify_telnyx_signature(
            tctx.telnyx_public_key,
            raw_body,
            request.headers.get("telnyx-signature-ed25519"),
            request.headers.get("telnyx-timestamp"),
            tolerance_seconds=tctx.telnyx_timestamp_tolerance_seconds,
        )
    except SignatureInvalidError as exc:
        reject("telnyx", exc)
        raise

    try:
        document: Any = json.loads(raw_body or b"{}")
    except ValueError as exc:
        raise MissingFieldsError(["data.payload"]) from exc
    if not isinstance(document, dict):
        raise MissingFieldsError(["data.payload"])

    event_type, inbound = parse_telnyx_event(document)
    if event_type is not None and event_type != "message.received":
        return WebhookAck(ok=True, ignored=True)

    message = await run_in_threadpool(record_inbound, db, inbound)
    return WebhookAck(ok=True, message_id=message.id)
