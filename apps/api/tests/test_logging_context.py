from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leaddesk.core.config import get_settings
from leaddesk.core.database import Base, get_db
from leaddesk.crm.models import ApiKey, AssignmentRule, UserProfile
from leaddesk.logging import JsonLogFormatter
from leaddesk.main import app
from leaddesk.middleware.rate_limit import reset_rate_limiter

INTAKE_KEY = "LOGKEY00000000000000000000000001"


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
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded(db_session: Session) -> dict[str, object]:
    agent = UserProfile(email="agent@example.com", full_name="Agent A", role="agent")
    key = ApiKey(api_key=INTAKE_KEY, name="Logs", source_prefix="LOGS")
    db_session.add_all([agent, key])
    db_session.flush()
    rule = AssignmentRule(source_name="LOGS", country_code="FR", assigned_agent_id=agent.id)
    db_session.add(rule)
    db_session.commit()
    return {"agent": agent, "key": key, "rule": rule}


def test_logs_include_correlation_id_for_http(
    client: TestClient,
    seeded: dict[str, object],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    agent = seeded["agent"]
    assert isinstance(agent, UserProfile)
    settings = get_settings()
    token = jwt.encode({"sub": str(agent.id)}, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    response = client.get(
        "/api/crm/leads/31337",
        headers={"Authorization": f"Bearer {token}", "X-Correlation-Id": "abc-123"},
    )
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/leads/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_intake_logs_rule_match_and_creation(
    client: TestClient,
    seeded: dict[str, object],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    agent = seeded["agent"]
    rule = seeded["rule"]
    assert isinstance(agent, UserProfile) and isinstance(rule, AssignmentRule)

    response = client.post(
        "/api/leads",
        json={"firstName": "Log", "lastName": "Lead", "email": "log@example.com", "country": "France"},
        headers={"X-API-Key": INTAKE_KEY, "X-Correlation-Id": "intake-log-1"},
    )
    assert response.status_code == 200
    lead_id = response.json()["data"]["id"]

    intake_records = [record for record in caplog.records if record.name == "leaddesk.intake"]
    matched = [record for record in intake_records if record.getMessage() == "intake.rule_matched"]
    assert matched
    assert getattr(matched[-1], "rule_id", None) == str(rule.id)
    assert getattr(matched[-1], "country_code", None) == "FR"
    assert getattr(matched[-1], "correlation_id", None) == "intake-log-1"

    created = [record for record in intake_records if record.getMessage() == "intake.lead_created"]
    assert created
    assert getattr(created[-1], "lead_id", None) == lead_id
    assert getattr(created[-1], "assigned_to", None) == str(agent.id)


def test_intake_rejections_log_a_warning(
    client: TestClient,
    seeded: dict[str, object],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    response = client.post("/api/leads", json={"firstName": "No"}, headers={"X-API-Key": INTAKE_KEY})
    assert response.status_code == 400

    rejected = [record for record in caplog.records if record.getMessage() == "intake.rejected"]
    assert rejected
    assert rejected[-1].levelno == logging.WARNING
    assert getattr(rejected[-1], "error_code", None) == "validation_error"
    assert getattr(rejected[-1], "status_code", None) == 400


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "leaddesk.intake",
            "levelno": logging.INFO,
            "levelname": "INFO",
            "msg": "intake.lead_created",
            "lead_id": 7,
            "api_key_id": "key-1",
            "secret_token": "do-not-log",
            "correlation_id": "fmt-1",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "intake.lead_created"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"] == {"lead_id": 7, "api_key_id": "key-1"}
