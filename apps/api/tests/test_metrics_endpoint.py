from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from prometheus_client import REGISTRY
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leaddesk.core.config import get_settings
from leaddesk.core.database import Base, get_db
from leaddesk.crm.models import ApiKey, UserProfile
from leaddesk.main import app
from leaddesk.middleware.rate_limit import reset_rate_limiter

INTAKE_KEY = "METRICSKEY0000000000000000000001"


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def staff(db_session: Session) -> dict[str, UserProfile]:
    admin = UserProfile(email="metrics-admin@example.com", full_name="Metrics Admin", role="admin")
    agent = UserProfile(email="metrics-agent@example.com", full_name="Metrics Agent", role="agent")
    db_session.add_all([admin, agent])
    db_session.add(ApiKey(api_key=INTAKE_KEY, name="Metrics", source_prefix="METRICS"))
    db_session.commit()
    return {"admin": admin, "agent": agent}


def _auth(user: UserProfile) -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode({"sub": str(user.id)}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_metrics_endpoint_exposes_http_and_intake_metrics(client: TestClient, staff: dict[str, UserProfile]) -> None:
    ok_before = _sample("intake_submissions_total", {"method": "POST", "code": "ok"})
    duplicate_before = _sample("intake_submissions_total", {"method": "POST", "code": "duplicate_email"})
    unassigned_before = _sample("intake_auto_assignments_total", {"outcome": "unassigned"})

    health = client.get("/health")
    assert health.status_code == 200

    body = {"firstName": "Mona", "lastName": "Metrics", "email": "mona@example.com"}
    assert client.post("/api/leads", json=body, headers={"X-API-Key": INTAKE_KEY}).status_code == 200
    assert client.post("/api/leads", json=body, headers={"X-API-Key": INTAKE_KEY}).status_code == 409

    assert _sample("intake_submissions_total", {"method": "POST", "code": "ok"}) == ok_before + 1
    assert _sample("intake_submissions_total", {"method": "POST", "code": "duplicate_email"}) == duplicate_before + 1
    assert _sample("intake_auto_assignments_total", {"outcome": "unassigned"}) == unassigned_before + 1

    lead = client.get("/api/crm/leads/1", headers=_auth(staff["admin"]))
    assert lead.status_code == 200

    metrics = client.get("/metrics", headers=_auth(staff["admin"]))
    assert metrics.status_code == 200
    text = metrics.text

    assert "http_requests_total" in text
    assert "http_request_duration_seconds" in text
    assert "intake_submissions_total" in text
    assert 'path="/health"' in text
    assert 'path="/api/leads"' in text
    assert 'path="/api/crm/leads/{id}"' in text


def test_metrics_endpoint_requires_admin(client: TestClient, staff: dict[str, UserProfile]) -> None:
    assert client.get("/metrics").status_code == 403
    assert client.get("/metrics", headers=_auth(staff["agent"])).status_code == 403


def test_metrics_endpoint_hidden_when_disabled(
    client: TestClient,
    staff: dict[str, UserProfile],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    assert client.get("/metrics", headers=_auth(staff["admin"])).status_code == 404
