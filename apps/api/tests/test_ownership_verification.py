from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ghostcrm.core.database import Base
from ghostcrm.telecom.errors import InvalidPhoneNumberError, NumberNotFoundError, ProviderAccountNotFoundError
from ghostcrm.telecom.verification import normalize_e164, verify_ownership
from telecom_fakes import FakeAdapterFactory, make_context, seed_member, seed_provider_account


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


def test_number_listed_by_vendor_is_verified(db_session: Session) -> None:
    factory = FakeAdapterFactory(owned_numbers=("+15551230000",))
    tctx = make_context(factory)
    organization = seed_member(db_session)
    account = seed_provider_account(db_session, tctx, organization)

    assert verify_ownership(db_session, tctx, organization.id, account.id, "+15551230000") is True
    assert factory.adapters[0].lookups == ["+15551230000"]
    assert factory.adapters[0].closed is True


def test_number_missing_from_vendor_raises(db_session: Session) -> None:
    factory = FakeAdapterFactory(owned_numbers=("+15551230000",))
    tctx = make_context(factory)
    organization = seed_member(db_session)
    account = seed_provider_account(db_session, tctx, organization)

    with pytest.raises(NumberNotFoundError):
        verify_ownership(db_session, tctx, organization.id, account.id, "+15559870000")

    assert factory.adapters[0].closed is True


def test_account_of_another_organization_is_not_usable(db_session: Session) -> None:
    tctx = make_context(FakeAdapterFactory(owned_numbers=("+15551230000",)))
    organization = seed_member(db_session, user_id="user-1", name="Org A")
    other = seed_member(db_session, user_id="user-2", name="Org B")
    foreign_account = seed_provider_account(db_session, tctx, other)

    with pytest.raises(ProviderAccountNotFoundError):
        verify_ownership(db_session, tctx, organization.id, foreign_account.id, "+15551230000")

    with pytest.raises(ProviderAccountNotFoundError):
        verify_ownership(db_session, tctx, organization.id, uuid.uuid4(), "+15551230000")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("+15551234567", "+15551234567"),
        ("+1 (555) 123-4567", "+15551234567"),
        ("+44 20 7946 0958", "+442079460958"),
    ],
)
def test_normalize_e164_accepts_formatted_numbers(raw: str, expected: str) -> None:
    assert normalize_e164(raw) == expected


@pytest.mark.parametrize("raw", ["5551234567", "+0123456789", "+1555abc4567", "+1234"])
def test_normalize_e164_rejects_invalid_numbers(raw: str) -> None:
    with pytest.raises(InvalidPhoneNumberError):
        normalize_e164(raw)
