from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ghostcrm.core.database import Base
from ghostcrm.telecom.errors import NoProviderConfiguredError
from ghostcrm.telecom.selection import resolve_provider_account, select_adapter
from telecom_fakes import (
    TELNYX_SECRETS,
    FakeAdapterFactory,
    make_context,
    seed_member,
    seed_phone_number,
    seed_provider_account,
)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def test_zero_accounts_raises_no_provider_configured(db_session: Session) -> None:
    organization = seed_member(db_session)

    with pytest.raises(NoProviderConfiguredError):
        select_adapter(db_session, make_context(), organization.id)


def test_single_account_is_used_without_default_flag(db_session: Session) -> None:
    tctx = make_context()
    organization = seed_member(db_session)
    account = seed_provider_account(db_session, tctx, organization, provider_id="telnyx")

    selected = select_adapter(db_session, tctx, organization.id)

    assert selected.account.id == account.id
    assert selected.adapter.provider == "telnyx"


def test_default_account_wins_over_others(db_session: Session) -> None:
    tctx = make_context()
    organization = seed_member(db_session)
    seed_provider_account(db_session, tctx, organization, provider_id="twilio")
    default = seed_provider_account(db_session, tctx, organization, provider_id="telnyx", is_default=True)

    assert resolve_provider_account(db_session, organization.id).id == default.id


def test_from_address_bound_account_wins_over_default(db_session: Session) -> None:
    tctx = make_context()
    organization = seed_member(db_session)
    bound = seed_provider_account(db_session, tctx, organization, provider_id="twilio")
    seed_provider_account(db_session, tctx, organization, provider_id="telnyx", is_default=True)
    seed_phone_number(db_session, organization, "+15550001111", account=bound)

    assert resolve_provider_account(db_session, organization.id, "+15550001111").id == bound.id
    assert resolve_provider_account(db_session, organization.id, "+15559999999").provider_id == "telnyx"


def test_several_accounts_without_default_is_ambiguous(db_session: Session) -> None:
    tctx = make_context()
    organization = seed_member(db_session)
    seed_provider_account(db_session, tctx, organization, provider_id="twilio")
    seed_provider_account(db_session, tctx, organization, provider_id="telnyx")

    with pytest.raises(NoProviderConfiguredError):
        resolve_provider_account(db_session, organization.id)


def test_accounts_of_other_organizations_are_ignored(db_session: Session) -> None:
    tctx = make_context()
    organization = seed_member(db_session, user_id="user-1", name="Org A")
    other = seed_member(db_session, user_id="user-2", name="Org B")
    seed_provider_account(db_session, tctx, other, provider_id="twilio", is_default=True)

    with pytest.raises(NoProviderConfiguredError):
        resolve_provider_account(db_session, organization.id)


def test_adapter_factory_receives_decrypted_secrets(db_session: Session) -> None:
    factory = FakeAdapterFactory()
    tctx = make_context(factory)
    organization = seed_member(db_session)
    seed_provider_account(db_session, tctx, organization, provider_id="telnyx")

    select_adapter(db_session, tctx, organization.id)

    assert factory.calls == [("telnyx", TELNYX_SECRETS, {})]
