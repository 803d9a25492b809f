from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from leaddesk.core.config import get_settings
from leaddesk.core.database import Base, get_db
from leaddesk.crm.models import ApiKey
from leaddesk.main import app
from leaddesk.middleware.rate_limit import reset_rate_limiter
from leaddesk.otel import setup_inmemory_otel

INTAKE_KEY = "OTELKEY0000000000000000000000001"


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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def api_key(db_session: Session) -> ApiKey:
    key = ApiKey(api_key=INTAKE_KEY, name="Otel", source_prefix="OTEL")
    db_session.add(key)
    db_session.commit()
    return key


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
    api_key: ApiKey,
) -> None:
    response = client.get("/api/leads", headers={"X-API-Key": INTAKE_KEY, "X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_intake_submission_emits_stage_spans(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
    api_key: ApiKey,
) -> None:
    response = client.post(
        "/api/leads",
        json={"firstName": "Otto", "lastName": "Tel", "email": "otto@example.com"},
        headers={"X-API-Key": INTAKE_KEY, "X-Correlation-Id": "otel-intake-1"},
    )
    assert response.status_code == 200
    lead_id = response.json()["data"]["id"]

    spans = {span.name: span for span in span_exporter.get_finished_spans()}
    for name in (
        "intake.authenticate",
        "intake.submit",
        "intake.deduplicate",
        "intake.resolve_assignment",
        "intake.persist",
    ):
        assert name in spans

    submit = spans["intake.submit"]
    assert submit.attributes.get("lead_id") == lead_id
    assert submit.attributes.get("api_key_id") == str(api_key.id)
    assert submit.attributes.get("correlation_id") == "otel-intake-1"
    assert spans["intake.resolve_assignment"].attributes.get("matched") is False
    assert spans["intake.persist"].parent is not None
    assert spans["intake.persist"].parent.span_id == submit.context.span_id
