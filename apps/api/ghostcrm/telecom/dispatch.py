from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from ghostcrm import events
from ghostcrm.metrics import observe_message_dispatched
from ghostcrm.otel import telecom_span
from ghostcrm.services.audit import write_audit_event
from ghostcrm.telecom.context import TelecomContext
from ghostcrm.telecom.errors import MissingFieldsError, TelecomError
from ghostcrm.telecom.models import Message, PhoneNumber, ProviderAccount
from ghostcrm.telecom.selection import SelectedAdapter, select_adapter


logger = logging.getLogger("ghostcrm.telecom.dispatch")


@dataclass(slots=True)
class DispatchResult:
    ok: bool
    message_id: uuid.UUID
    provider_id: str | None = None
    error: str | None = None
    code: str | None = None
    status_code: int = 200


@dataclass(slots=True)
class MessageDispatchService:
    max_list_limit: int = 200

    def send_message(
        self,
        session: Session,
        tctx: TelecomContext,
        *,
        organization_id: uuid.UUID,
        actor_id: str | None,
        to: str | None,
        body: str | None,
        from_: str | None = None,
        channel: str = "sms",
    ) -> DispatchResult:
        """Send one outbound message: queued -> sent | error, no retry.

        The Message insert, its status update and the AuditEvent are committed
        together, so a committed row is never left ``queued``.
        """
        missing = [name for name, value in (("to", to), ("body", body)) if not value]
        if missing:
            raise MissingFieldsError(missing)

        message = Message(
            id=uuid.uuid4(),
            organization_id=organization_id,
            direction="outbound",
            channel=channel,
            to_address=to,
            from_address=from_,
            body=body,
            status="queued",
            created_by=actor_id,
        )
        try:
            with telecom_span(
                "message.dispatch",
                organization_id=str(organization_id),
                message_id=str(message.id),
            ) as span:
                selected, failure = self._route(session, tctx, message)
                if message.provider:
                    span.set_attribute("provider", message.provider)
                try:
                    session.add(message)
                    session.flush()
                    result = self._deliver(message, selected, failure)
                finally:
                    if selected is not None:
                        selected.adapter.close()
                span.set_attribute("status", message.status)
            self._record(session, message, result)
            session.commit()
        except Exception:
            session.rollback()
            raise

        observe_message_dispatched(message.provider or "none", message.status)
        extra = {
            "organization_id": str(organization_id),
            "message_id": str(message.id),
            "provider": message.provider,
            "status": message.status,
        }
        if result.ok:
            logger.info("message.dispatch.sent", extra=extra)
        else:
            logger.warning("message.dispatch.failed", extra={**extra, "error": result.error})

        events.publish(
            {
                "event_type": "message.sent" if result.ok else "message.failed",
                "message_id": str(message.id),
                "organization_id": str(organization_id),
                "provider": message.provider,
                "error_code": result.code,
            }
        )
        return result

    def _route(
        self,
        session: Session,
        tctx: TelecomContext,
        message: Message,
    ) -> tuple[SelectedAdapter | None, TelecomError | None]:
        """Fill the routing columns before the ``queued`` insert; they never change afterwards."""
        try:
            selected = select_adapter(session, tctx, message.organization_id, message.from_address)
        except TelecomError as exc:
            return None, exc
        message.provider = selected.account.provider_id
        message.provider_account_id = selected.account.id
        if not message.from_address:
            message.from_address = self._default_sender(session, selected.account)
        return selected, None

    @staticmethod
    def _deliver(message: Message, selected: SelectedAdapter | None, failure: TelecomError | None) -> DispatchResult:
        if selected is not None:
            try:
                sent = selected.adapter.send_sms(message.to_address, message.from_address, message.body)
            except TelecomError as exc:
                failure = exc
            else:
                message.status = "sent"
                message.provider_id = sent.provider_message_id
                return DispatchResult(ok=True, message_id=message.id, provider_id=sent.provider_message_id)

        assert failure is not None
        message.status = "error"
        message.error = failure.message
        return DispatchResult(
            ok=False,
            message_id=message.id,
            error=failure.message,
            code=failure.code,
            status_code=failure.status_code,
        )

    @staticmethod
    def _record(session: Session, message: Message, result: DispatchResult) -> None:
        message.updated_at = datetime.now(timezone.utc)
        write_audit_event(
            session,
            organization_id=message.organization_id,
            actor_id=message.created_by,
            action="message.sent" if result.ok else "message.send_failed",
            entity_type="message",
            entity_id=str(message.id),
            metadata={
                "channel": message.channel,
                "provider": message.provider,
                "provider_id": message.provider_id,
                "error": message.error,
            },
        )

    @staticmethod
    def _default_sender(session: Session, account: ProviderAccount) -> str | None:
        return session.scalar(
            select(PhoneNumber.e164)
            .where(
                PhoneNumber.organization_id == account.organization_id,
                PhoneNumber.provider_account_id == account.id,
                PhoneNumber.verified.is_(True),
            )
            .order_by(PhoneNumber.created_at.asc(), PhoneNumber.id.asc())
        )

    def list_messages(
        self,
        session: Session,
        organization_id: uuid.UUID,
        *,
        direction: str | None = None,
        limit: int = 50,
    ) -> list[Message]:
        query = select(Message).where(Message.organization_id == organization_id)
        if direction:
            query = query.where(Message.direction == direction)
        bounded = max(1, min(limit, self.max_list_limit))
        return list(session.scalars(query.order_by(Message.created_at.desc(), Message.id.desc()).limit(bounded)))


dispatch_service = MessageDispatchService()
