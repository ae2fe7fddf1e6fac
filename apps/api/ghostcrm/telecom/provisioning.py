from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ghostcrm.services.audit import write_audit_event
from ghostcrm.telecom.adapters import REQUIRED_SECRET_KEYS, SUPPORTED_PROVIDERS
from ghostcrm.telecom.context import TelecomContext
from ghostcrm.telecom.errors import (
    MissingFieldsError,
    PhoneNumberAlreadyRegisteredError,
    UnsupportedProviderError,
)
from ghostcrm.telecom.membership import Membership
from ghostcrm.telecom.models import PhoneNumber, ProviderAccount
from ghostcrm.telecom.schemas import PhoneNumberCreate, ProviderAccountCreate
from ghostcrm.telecom.verification import normalize_e164, verify_ownership


logger = logging.getLogger("ghostcrm.telecom.provisioning")


@dataclass(slots=True)
class ProviderAccountService:
    def create_account(
        self,
        session: Session,
        tctx: TelecomContext,
        membership: Membership,
        payload: ProviderAccountCreate,
    ) -> ProviderAccount:
        missing = [name for name, value in (("provider_id", payload.provider_id), ("secrets", payload.secrets)) if not value]
        if missing:
            raise MissingFieldsError(missing)

        provider_id = str(payload.provider_id).strip().lower()
        if provider_id not in SUPPORTED_PROVIDERS:
            raise UnsupportedProviderError(f"unsupported provider '{payload.provider_id}'")

        secrets = dict(payload.secrets or {})
        missing_secrets = [f"secrets.{key}" for key in REQUIRED_SECRET_KEYS[provider_id] if not secrets.get(key)]
        if missing_secrets:
            raise MissingFieldsError(missing_secrets)

        organization_id = membership.organization_id
        has_accounts = session.scalar(
            select(ProviderAccount.id).where(ProviderAccount.organization_id == organization_id).limit(1)
        )
        is_default = bool(payload.is_default) or has_accounts is None

        try:
            secret_ref = tctx.secret_store.save(session, organization_id, provider_id, secrets)
            if is_default:
                session.execute(
                    update(ProviderAccount)
                    .where(ProviderAccount.organization_id == organization_id)
                    .values(is_default=False)
                )
            account = ProviderAccount(
                organization_id=organization_id,
                provider_id=provider_id,
                label=payload.label,
                meta=dict(payload.meta),
                secret_ref=secret_ref,
                is_default=is_default,
            )
            session.add(account)
            session.flush()
            write_audit_event(
                session,
                organization_id=organization_id,
                actor_id=membership.user_id,
                action="provider_account.created",
                entity_type="provider_account",
                entity_id=str(account.id),
                metadata={"provider": provider_id, "label": payload.label, "is_default": is_default},
            )
            session.commit()
        except Exception:
            session.rollback()
            raise

        session.refresh(account)
        logger.info(
            "provider_account.created",
            extra={
                "organization_id": str(organization_id),
                "provider": provider_id,
                "provider_account_id": str(account.id),
                "meta": account.meta,
            },
        )
        return account

    def list_accounts(self, session: Session, organization_id: uuid.UUID) -> list[ProviderAccount]:
        return list(
            session.scalars(
                select(ProviderAccount)
                .where(ProviderAccount.organization_id == organization_id)
                .order_by(ProviderAccount.created_at.asc(), ProviderAccount.id.asc())
            )
        )


@dataclass(slots=True)
class PhoneNumberService:
    def register_number(
        self,
        session: Session,
        tctx: TelecomContext,
        membership: Membership,
        payload: PhoneNumberCreate,
    ) -> PhoneNumber:
        """Bind a number to the caller's organization.

        With a provider account the vendor must list the number or the
        registration fails; without one the number is stored unverified.
        """
        if not payload.e164:
            raise MissingFieldsError(["e164"])
        e164 = normalize_e164(payload.e164)

        existing = session.scalar(select(PhoneNumber.id).where(PhoneNumber.e164 == e164))
        if existing is not None:
            raise PhoneNumberAlreadyRegisteredError(f"{e164} is already registered")

        verified = False
        if payload.provider_account_id is not None:
            verified = verify_ownership(
                session,
                tctx,
                membership.organization_id,
                payload.provider_account_id,
                e164,
            )

        number = PhoneNumber(
            e164=e164,
            organization_id=membership.organization_id,
            provider_account_id=payload.provider_account_id,
            verified=verified,
        )
        try:
            session.add(number)
            session.flush()
            write_audit_event(
                session,
                organization_id=membership.organization_id,
                actor_id=membership.user_id,
                action="phone_number.registered",
                entity_type="phone_number",
                entity_id=str(number.id),
                metadata={"e164": e164, "verified": verified},
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        session.refresh(number)
        return number

    def list_numbers(self, session: Session, organization_id: uuid.UUID) -> list[PhoneNumber]:
        return list(
            session.scalars(
                select(PhoneNumber)
                .where(PhoneNumber.organization_id == organization_id)
                .order_by(PhoneNumber.created_at.asc(), PhoneNumber.id.asc())
            )
        )


provider_account_service = ProviderAccountService()
phone_number_service = PhoneNumberService()
