from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leaddesk import events
from leaddesk.core.config import get_settings
from leaddesk.core.database import Base, get_db
from leaddesk.crm.models import ApiKey, UserProfile
from leaddesk.main import app
from leaddesk.middleware.rate_limit import reset_rate_limiter

INTAKE_KEY = "CORRKEY0000000000000000000000001"


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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def admin(db_session: Session) -> UserProfile:
    profile = UserProfile(email="admin@example.com", full_name="Admin", role="admin")
    db_session.add(profile)
    db_session.add(ApiKey(api_key=INTAKE_KEY, name="Corr", source_prefix="CORR"))
    db_session.commit()
    return profile


def _auth(user: UserProfile) -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode({"sub": str(user.id)}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def test_generated_correlation_id_returned_in_header_and_error_envelope(
    client: TestClient,
    admin: UserProfile,
) -> None:
    response = client.get("/api/crm/leads/424242", headers=_auth(admin))
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient, admin: UserProfile) -> None:
    response = client.get("/api/crm/leads/424242", headers={**_auth(admin), "X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.headers.get("x-request-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_intake_responses_carry_correlation_header(client: TestClient, admin: UserProfile) -> None:
    response = client.get("/api/leads", headers={"X-API-Key": INTAKE_KEY, "X-Correlation-Id": "intake-corr-1"})
    assert response.status_code == 200
    assert response.headers.get("x-correlation-id") == "intake-corr-1"


def test_event_envelope_includes_correlation_id(client: TestClient, admin: UserProfile) -> None:
    response = client.post(
        "/api/crm/leads",
        json={"first_name": "Corr", "last_name": "Lead", "email": "corr@example.com"},
        headers={**_auth(admin), "X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 201

    created_events = [item for item in events.published_events if item.get("event_type") == "leads.lead.created"]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"
    assert created_events[-1].get("actor") == str(admin.id)


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    admin: UserProfile,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CRM_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    headers = {**_auth(admin), "X-Correlation-Id": "corr-rate-1"}
    first = client.post(
        "/api/crm/leads",
        json={"first_name": "Rate", "last_name": "One", "email": "rate1@example.com"},
        headers=headers,
    )
    assert first.status_code == 201

    second = client.post(
        "/api/crm/leads",
        json={"first_name": "Rate", "last_name": "Two", "email": "rate2@example.com"},
        headers=headers,
    )
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
