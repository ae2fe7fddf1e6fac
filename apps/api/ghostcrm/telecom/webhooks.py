from __future__ import annotations

import base64
import binascii
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from sqlalchemy import select
from sqlalchemy.orm import Session
from starlette.requests import Request
from twilio.request_validator import RequestValidator

from ghostcrm import events
from ghostcrm.metrics import observe_webhook
from ghostcrm.otel import telecom_span
from ghostcrm.telecom.errors import MissingFieldsError, SignatureInvalidError, UnknownDestinationError
from ghostcrm.telecom.models import Message, PhoneNumber


logger = logging.getLogger("ghostcrm.telecom.webhooks")


@dataclass(slots=True)
class InboundSms:
    vendor: str
    to: str | None
    from_: str | None
    body: str
    provider_message_id: str | None


def signed_request_url(request: Request, public_base_url: str | None) -> str:
    """URL the vendor signed; behind a proxy the public origin replaces the local one."""
    if not public_base_url:
        return str(request.url)
    url = public_base_url.rstrip("/") + request.url.path
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


def validate_twilio_signature(
    auth_token: str | None,
    url: str,
    params: Mapping[str, Any],
    signature: str | None,
) -> None:
    if not auth_token:
        raise SignatureInvalidError("twilio webhook secret is not configured")
    if not signature:
        raise SignatureInvalidError("missing X-Twilio-Signature header")
    if not RequestValidator(auth_token).validate(url, dict(params), signature):
        raise SignatureInvalidError("twilio signature mismatch")


def verify_telnyx_signature(
    public_key: str | None,
    raw_body: bytes,
    signature: str | None,
    timestamp: str | None,
    *,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> None:
    """Check the Ed25519 signature Telnyx puts over ``"{timestamp}|{body}"``."""
    if not public_key:
        raise SignatureInvalidError("telnyx public key is not configured")
    if not signature or not timestamp:
        raise SignatureInvalidError("missing telnyx signature headers")
    try:
        issued_at = int(timestamp)
    except ValueError as exc:
        raise SignatureInvalidError("telnyx timestamp is not an integer") from exc

    current = time.time() if now is None else now
    if abs(current - issued_at) > tolerance_seconds:
        raise SignatureInvalidError("telnyx timestamp outside tolerance")

    try:
        key = Ed25519PublicKey.from_public_bytes(base64.b64decode(public_key))
        key.verify(base64.b64decode(signature), timestamp.encode("utf-8") + b"|" + raw_body)
    except (InvalidSignature, ValueError, binascii.Error) as exc:
        raise SignatureInvalidError("telnyx signature mismatch") from exc


def _first_phone(value: Any) -> str | None:
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        phone = value.get("phone_number")
        return str(phone) if phone else None
    if isinstance(value, list) and value:
        return _first_phone(value[0])
    return None


def parse_twilio_form(form: Mapping[str, Any]) -> InboundSms:
    return InboundSms(
        vendor="twilio",
        to=form.get("To") or None,
        from_=form.get("From") or None,
        body=str(form.get("Body") or ""),
        provider_message_id=form.get("MessageSid") or form.get("SmsSid") or None,
    )


def parse_telnyx_event(document: Mapping[str, Any]) -> tuple[str | None, InboundSms]:
    data = document.get("data") if isinstance(document.get("data"), Mapping) else {}
    payload = data.get("payload") if isinstance(data.get("payload"), Mapping) else {}
    event_type = data.get("event_type")
    message = InboundSms(
        vendor="telnyx",
        to=_first_phone(payload.get("to")),
        from_=_first_phone(payload.get("from")),
        body=str(payload.get("text") or ""),
        provider_message_id=str(payload["id"]) if payload.get("id") else None,
    )
    return (str(event_type) if event_type else None), message


def record_inbound(session: Session, inbound: InboundSms) -> Message:
    """Persist a received message for the organization that owns the destination number."""
    missing = [name for name, value in (("to", inbound.to), ("from", inbound.from_)) if not value]
    if missing:
        observe_webhook(inbound.vendor, "invalid")
        raise MissingFieldsError(missing)

    with telecom_span("webhook.inbound", vendor=inbound.vendor):
        number = session.scalar(select(PhoneNumber).where(PhoneNumber.e164 == inbound.to))
        if number is None:
            observe_webhook(inbound.vendor, "unknown_destination")
            logger.warning("webhook.unknown_destination", extra={"vendor": inbound.vendor})
            raise UnknownDestinationError(f"{inbound.to} is not mapped to an organization")

        message = Message(
            organization_id=number.organization_id,
            provider_account_id=number.provider_account_id,
            direction="inbound",
            channel="sms",
            to_address=str(inbound.to),
            from_address=inbound.from_,
            body=inbound.body,
            status="received",
            provider=inbound.vendor,
            provider_id=inbound.provider_message_id,
        )
        try:
            session.add(message)
            session.commit()
        except Exception:
            session.rollback()
            raise
        session.refresh(message)

    observe_webhook(inbound.vendor, "stored")
    logger.info(
        "webhook.inbound.stored",
        extra={
            "vendor": inbound.vendor,
            "organization_id": str(message.organization_id),
            "message_id": str(message.id),
        },
    )
    events.publish(
        {
            "event_type": "message.received",
            "message_id": str(message.id),
            "organization_id": str(message.organization_id),
            "provider": inbound.vendor,
        }
    )
    return message


def reject(vendor: str, exc: SignatureInvalidError) -> None:
    observe_webhook(vendor, "rejected")
    logger.warning("webhook.rejected", extra={"vendor": vendor, "error": exc.message})


def twilio_params(form: Mapping[str, Any]) -> dict[str, str]:
    return {key: str(value) for key, value in form.items()}
