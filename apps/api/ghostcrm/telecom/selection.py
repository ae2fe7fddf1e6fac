from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from ghostcrm.telecom.adapters import SmsAdapter
from ghostcrm.telecom.context import TelecomContext
from ghostcrm.telecom.errors import NoProviderConfiguredError, ProviderAccountNotFoundError
from ghostcrm.telecom.models import PhoneNumber, ProviderAccount


@dataclass(slots=True)
class SelectedAdapter:
    account: ProviderAccount
    adapter: SmsAdapter


def resolve_provider_account(
    session: Session,
    organization_id: uuid.UUID,
    from_address: str | None = None,
) -> ProviderAccount:
    """Choose the account used to send for an organization.

    Order: the account bound to ``from_address``, then the account marked
    default, then the only account when exactly one exists.
    """
    accounts = list(
        session.scalars(
            select(ProviderAccount)
            .where(ProviderAccount.organization_id == organization_id)
            .order_by(ProviderAccount.created_at.asc(), ProviderAccount.id.asc())
        )
    )
    if not accounts:
        raise NoProviderConfiguredError("organization has no provider accounts")

    if from_address:
        bound_account_id = session.scalar(
            select(PhoneNumber.provider_account_id).where(
                PhoneNumber.organization_id == organization_id,
                PhoneNumber.e164 == from_address,
            )
        )
        for account in accounts:
            if bound_account_id is not None and account.id == bound_account_id:
                return account

    for account in accounts:
        if account.is_default:
            return account

    if len(accounts) == 1:
        return accounts[0]
    raise NoProviderConfiguredError("organization has several provider accounts and none is marked default")


def get_provider_account(session: Session, organization_id: uuid.UUID, provider_account_id: uuid.UUID) -> ProviderAccount:
    account = session.scalar(
        select(ProviderAccount).where(
            ProviderAccount.id == provider_account_id,
            ProviderAccount.organization_id == organization_id,
        )
    )
    if account is None:
        raise ProviderAccountNotFoundError("provider account not found")
    return account


def build_adapter(session: Session, tctx: TelecomContext, account: ProviderAccount) -> SmsAdapter:
    secrets = tctx.secret_store.load(session, account.secret_ref)
    return tctx.adapter_factory(account.provider_id, secrets, dict(account.meta or {}))


def select_adapter(
    session: Session,
    tctx: TelecomContext,
    organization_id: uuid.UUID,
    from_address: str | None = None,
) -> SelectedAdapter:
    account = resolve_provider_account(session, organization_id, from_address)
    return SelectedAdapter(account=account, adapter=build_adapter(session, tctx, account))
