from __future__ import annotations

import asyncio
from collections.abc import Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from twilio.request_validator import RequestValidator

from ghostcrm import events
from ghostcrm.core.config import get_settings
from ghostcrm.core.database import Base, get_db
from ghostcrm.main import app
from ghostcrm.middleware.rate_limit import reset_rate_limiter
from ghostcrm.models.organization import Organization
from ghostcrm.telecom import api as telecom_api
from ghostcrm.telecom.context import TelecomContext, get_telecom_context
from ghostcrm.telecom.models import Message
from telecom_fakes import make_context, seed_member, seed_phone_number


AUTH_TOKEN = "twilio-webhook-token"
WEBHOOK_URL = "http://testserver/api/telecom/twilio/inbound-sms"


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
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()


@pytest.fixture()
def tctx() -> TelecomContext:
    return make_context(twilio_auth_token=AUTH_TOKEN)


@pytest.fixture()
def organization(db_session: Session) -> Organization:
    organization = seed_member(db_session)
    seed_phone_number(db_session, organization, "+15550001111")
    return organization


@pytest.fixture()
def client(db_session: Session, tctx: TelecomContext) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_telecom_context] = lambda: tctx
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _form(to: str = "+15550001111", sid: str = "SM-inbound-1") -> dict[str, str]:
    return {"To": to, "From": "+15550002222", "Body": "Is the truck still available?", "MessageSid": sid}


def _sign(params: dict[str, str], token: str = AUTH_TOKEN, url: str = WEBHOOK_URL) -> str:
    return RequestValidator(token).compute_signature(url, params)


def test_signed_inbound_sms_is_stored_for_number_owner(
    client: TestClient,
    db_session: Session,
    organization: Organization,
) -> None:
    params = _form()
    response = client.post(
        "/api/telecom/twilio/inbound-sms",
        data=params,
        headers={"X-Twilio-Signature": _sign(params)},
    )

    assert response.status_code == 200
    assert response.json()["ok"] is True

    message = db_session.scalar(select(Message))
    assert message is not None
    assert str(message.id) == response.json()["message_id"]
    assert message.organization_id == organization.id
    assert message.direction == "inbound"
    assert message.status == "received"
    assert message.provider == "twilio"
    assert message.provider_id == "SM-inbound-1"
    assert message.from_address == "+15550002222"
    assert events.published_events[-1]["event_type"] == "message.received"


def test_forged_signature_is_rejected_without_row(
    client: TestClient,
    db_session: Session,
    organization: Organization,
) -> None:
    params = _form()
    response = client.post(
        "/api/telecom/twilio/inbound-sms",
        data=params,
        headers={"X-Twilio-Signature": _sign(params, token="someone-elses-token")},
    )

    assert response.status_code == 403
    assert response.json()["error"] == "invalid_signature"
    assert db_session.scalar(select(Message.id)) is None


def test_tampered_body_is_rejected(client: TestClient, db_session: Session, organization: Organization) -> None:
    signature = _sign(_form())
    tampered = {**_form(), "Body": "send me the keys"}

    response = client.post("/api/telecom/twilio/inbound-sms", data=tampered, headers={"X-Twilio-Signature": signature})

    assert response.status_code == 403
    assert db_session.scalar(select(Message.id)) is None


def test_missing_signature_header_is_rejected(client: TestClient, db_session: Session, organization: Organization) -> None:
    response = client.post("/api/telecom/twilio/inbound-sms", data=_form())

    assert response.status_code == 403
    assert db_session.scalar(select(Message.id)) is None


def test_unmapped_destination_returns_404_without_row(
    client: TestClient,
    db_session: Session,
    organization: Organization,
) -> None:
    params = _form(to="+15559990000")
    response = client.post(
        "/api/telecom/twilio/inbound-sms",
        data=params,
        headers={"X-Twilio-Signature": _sign(params)},
    )

    assert response.status_code == 404
    assert response.json()["error"] == "unknown_destination"
    assert db_session.scalar(select(Message.id)) is None


def test_webhook_without_configured_secret_fails_closed(db_session: Session, organization: Organization) -> None:
    unsigned_context = make_context()
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_telecom_context] = lambda: unsigned_context
    try:
        with TestClient(app) as test_client:
            params = _form()
            response = test_client.post(
                "/api/telecom/twilio/inbound-sms",
                data=params,
                headers={"X-Twilio-Signature": _sign(params)},
            )
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 403
    assert db_session.scalar(select(Message.id)) is None


def test_public_base_url_replaces_local_origin(db_session: Session, organization: Organization) -> None:
    proxied_context = make_context(twilio_auth_token=AUTH_TOKEN, public_base_url="https://crm.example.com/")
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_telecom_context] = lambda: proxied_context
    try:
        with TestClient(app) as test_client:
            params = _form()
            signature = _sign(params, url="https://crm.example.com/api/telecom/twilio/inbound-sms")
            response = test_client.post(
                "/api/telecom/twilio/inbound-sms",
                data=params,
                headers={"X-Twilio-Signature": signature},
            )
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert db_session.scalar(select(Message.id)) is not None


def test_missing_from_returns_400(client: TestClient, db_session: Session, organization: Organization) -> None:
    params = {"To": "+15550001111", "Body": "hello"}
    response = client.post(
        "/api/telecom/twilio/inbound-sms",
        data=params,
        headers={"X-Twilio-Signature": _sign(params)},
    )

    assert response.status_code == 400
    assert response.json()["details"] == ["from"]


def test_inbound_row_is_written_off_the_event_loop(
    client: TestClient,
    db_session: Session,
    organization: Organization,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    loop_running: list[bool] = []
    record_inbound = telecom_api.record_inbound

    def recording(*args: Any, **kwargs: Any) -> Message:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            loop_running.append(False)
        else:
            loop_running.append(True)
        return record_inbound(*args, **kwargs)

    monkeypatch.setattr(telecom_api, "record_inbound", recording)
    params = _form()
    response = client.post(
        "/api/telecom/twilio/inbound-sms",
        data=params,
        headers={"X-Twilio-Signature": _sign(params)},
    )

    assert response.status_code == 200
    assert loop_running == [False]
