from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ghostcrm.core.auth import AuthUser, get_current_user
from ghostcrm.core.config import get_settings
from ghostcrm.core.database import Base, get_db
from ghostcrm.main import app
from ghostcrm.middleware.rate_limit import reset_rate_limiter
from ghostcrm.models.audit import AuditEvent
from ghostcrm.models.organization import Organization
from ghostcrm.telecom.context import TelecomContext, get_telecom_context
from ghostcrm.telecom.models import ProviderAccount, ProviderSecret
from telecom_fakes import TWILIO_SECRETS, FakeAdapterFactory, make_context, seed_member


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


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def factory() -> FakeAdapterFactory:
    return FakeAdapterFactory(owned_numbers=("+15550001111",))


@pytest.fixture()
def tctx(factory: FakeAdapterFactory) -> TelecomContext:
    return make_context(factory)


@pytest.fixture()
def organization(db_session: Session) -> Organization:
    return seed_member(db_session)


@pytest.fixture()
def client(db_session: Session, tctx: TelecomContext) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=["user"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_telecom_context] = lambda: tctx
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_create_account_stores_secrets_encrypted(
    client: TestClient,
    db_session: Session,
    tctx: TelecomContext,
    organization: Organization,
) -> None:
    response = client.post(
        "/api/telecom/providers/accounts",
        json={"provider_id": "twilio", "label": "Main line", "meta": {"region": "us1"}, "secrets": TWILIO_SECRETS},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["provider_id"] == "twilio"
    assert body["label"] == "Main line"
    assert body["meta"] == {"region": "us1"}
    assert body["is_default"] is True
    assert "secret_ref" not in body
    assert "secrets" not in body

    account = db_session.scalar(select(ProviderAccount).where(ProviderAccount.organization_id == organization.id))
    assert account is not None
    secret = db_session.scalar(select(ProviderSecret).where(ProviderSecret.ref == account.secret_ref))
    assert secret is not None
    assert TWILIO_SECRETS["auth_token"] not in secret.ciphertext
    assert tctx.secret_store.load(db_session, account.secret_ref) == TWILIO_SECRETS

    audit = db_session.scalar(select(AuditEvent).where(AuditEvent.action == "provider_account.created"))
    assert audit is not None
    assert audit.entity_id == body["id"]
    assert TWILIO_SECRETS["auth_token"] not in str(audit.event_metadata)


def test_explicit_default_replaces_previous_default(client: TestClient, organization: Organization) -> None:
    first = client.post("/api/telecom/providers/accounts", json={"provider_id": "twilio", "secrets": TWILIO_SECRETS})
    second = client.post(
        "/api/telecom/providers/accounts",
        json={"provider_id": "telnyx", "secrets": {"api_key": "KEY-2"}},
    )
    third = client.post(
        "/api/telecom/providers/accounts",
        json={"provider_id": "telnyx", "secrets": {"api_key": "KEY-3"}, "is_default": True},
    )
    assert first.json()["is_default"] is True
    assert second.json()["is_default"] is False
    assert third.json()["is_default"] is True

    listed = client.get("/api/telecom/providers/accounts")
    assert listed.status_code == 200
    defaults = [row["id"] for row in listed.json() if row["is_default"]]
    assert defaults == [third.json()["id"]]


@pytest.mark.parametrize(
    ("payload", "details"),
    [
        ({"secrets": {"api_key": "k"}}, ["provider_id"]),
        ({"provider_id": "twilio"}, ["secrets"]),
        ({"provider_id": "twilio", "secrets": {"account_sid": "AC1"}}, ["secrets.auth_token"]),
    ],
)
def test_create_account_missing_fields(
    client: TestClient,
    db_session: Session,
    organization: Organization,
    payload: dict,
    details: list[str],
) -> None:
    response = client.post("/api/telecom/providers/accounts", json=payload)

    assert response.status_code == 400
    assert response.json()["error"] == "missing fields"
    assert response.json()["details"] == details
    assert db_session.scalar(select(ProviderSecret.id)) is None


def test_unsupported_provider_is_rejected(client: TestClient, organization: Organization) -> None:
    response = client.post(
        "/api/telecom/providers/accounts",
        json={"provider_id": "plivo", "secrets": {"api_key": "k"}},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "unsupported_provider"


def test_create_account_requires_membership(client: TestClient, db_session: Session) -> None:
    response = client.post("/api/telecom/providers/accounts", json={"provider_id": "twilio", "secrets": TWILIO_SECRETS})

    assert response.status_code == 403
    assert response.json()["error"] == "no_membership"
    assert db_session.scalar(select(ProviderAccount.id)) is None


def test_list_accounts_hides_other_organizations(
    client: TestClient,
    db_session: Session,
    organization: Organization,
) -> None:
    other = seed_member(db_session, user_id="user-2", name="Other Dealer")
    db_session.add(
        ProviderAccount(
            organization_id=other.id,
            provider_id="twilio",
            meta={},
            secret_ref="org_x:twilio:0:abc",
            is_default=True,
        )
    )
    db_session.commit()

    created = client.post("/api/telecom/providers/accounts", json={"provider_id": "twilio", "secrets": TWILIO_SECRETS})
    assert created.status_code == 201

    listed = client.get("/api/telecom/providers/accounts")
    assert [row["id"] for row in listed.json()] == [created.json()["id"]]
