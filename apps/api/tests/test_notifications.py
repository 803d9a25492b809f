from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leaddesk import events
from leaddesk.core.config import get_settings
from leaddesk.core.database import Base, get_db
from leaddesk.crm.models import ApiKey, AssignmentRule, Lead, LeadNotification, UserProfile
from leaddesk.crm.service import NotificationService
from leaddesk.main import app
from leaddesk.middleware.rate_limit import reset_rate_limiter

BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)
NOTIFY_KEY = "NOTIFYKEY00000000000000000000001"


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
    monkeypatch.setenv("NOTIFICATIONS_ENABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()


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
    admin_one = UserProfile(email="admin1@example.com", full_name="Admin One", role="admin", created_at=BASE_TIME)
    admin_two = UserProfile(
        email="admin2@example.com",
        full_name="Admin Two",
        role="admin",
        created_at=BASE_TIME + timedelta(minutes=1),
    )
    agent = UserProfile(
        email="agent@example.com",
        full_name="Agent A",
        role="agent",
        created_at=BASE_TIME + timedelta(minutes=2),
    )
    db_session.add_all([admin_one, admin_two, agent])
    db_session.commit()
    return {"admin_one": admin_one, "admin_two": admin_two, "agent": agent}


@pytest.fixture()
def api_key(db_session: Session) -> ApiKey:
    key = ApiKey(api_key=NOTIFY_KEY, name="Notify", source_prefix="PARTNER", enable_notifications=True)
    db_session.add(key)
    db_session.commit()
    return key


def _auth(user: UserProfile) -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode({"sub": str(user.id)}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def _submit(client: TestClient, **overrides: object) -> int:
    body: dict[str, object] = {"firstName": "Ada", "lastName": "Lovelace", "email": "ada@example.com"}
    body.update(overrides)
    response = client.post("/api/leads", json=body, headers={"X-API-Key": NOTIFY_KEY})
    assert response.status_code == 200
    return response.json()["data"]["id"]


def _notifications(db_session: Session) -> list[LeadNotification]:
    db_session.expire_all()
    return list(db_session.scalars(select(LeadNotification).order_by(LeadNotification.created_at)))


def test_unassigned_intake_lead_notifies_every_admin(
    client: TestClient,
    db_session: Session,
    staff: dict[str, UserProfile],
    api_key: ApiKey,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    lead_id = _submit(client)

    rows = _notifications(db_session)
    assert {row.user_id for row in rows} == {staff["admin_one"].id, staff["admin_two"].id}
    assert all(row.lead_id == lead_id for row in rows)
    assert all(row.notification_type == "new_lead" for row in rows)
    assert all(row.message == "New lead: Ada Lovelace (PARTNER)" for row in rows)
    assert all(row.is_read is False for row in rows)

    records = [record for record in caplog.records if record.getMessage() == "notifications.created"]
    assert any(getattr(record, "count", None) == 2 and getattr(record, "lead_id", None) == lead_id for record in records)


def test_auto_assigned_intake_lead_notifies_only_the_agent(
    client: TestClient,
    db_session: Session,
    staff: dict[str, UserProfile],
    api_key: ApiKey,
) -> None:
    db_session.add(AssignmentRule(source_name="PARTNER", country_code="IT", assigned_agent_id=staff["agent"].id))
    db_session.commit()

    _submit(client, country="IT")

    rows = _notifications(db_session)
    assert [row.user_id for row in rows] == [staff["agent"].id]


def test_key_without_notifications_writes_nothing(
    client: TestClient,
    db_session: Session,
    staff: dict[str, UserProfile],
    api_key: ApiKey,
) -> None:
    api_key.enable_notifications = False
    db_session.commit()

    _submit(client)

    assert _notifications(db_session) == []


def test_global_switch_disables_notifications(
    client: TestClient,
    db_session: Session,
    staff: dict[str, UserProfile],
    api_key: ApiKey,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("NOTIFICATIONS_ENABLED", "false")
    get_settings.cache_clear()

    _submit(client)

    assert _notifications(db_session) == []


def test_subscriber_failure_does_not_fail_intake(
    client: TestClient,
    db_session: Session,
    staff: dict[str, UserProfile],
    api_key: ApiKey,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    def exploding_notify(self: NotificationService, session: Session, payload: dict[str, object]) -> int:
        raise RuntimeError("notification store unavailable")

    monkeypatch.setattr(NotificationService, "notify_lead_created", exploding_notify)
    caplog.set_level(logging.INFO)

    lead_id = _submit(client)

    assert db_session.get(Lead, lead_id) is not None
    failures = [
        record
        for record in caplog.records
        if record.name == "leaddesk.notifications" and record.getMessage() == "notifications.failed"
    ]
    assert failures
    assert getattr(failures[-1], "lead_id", None) == lead_id


def test_reassignment_notifies_new_owner_once(
    client: TestClient,
    db_session: Session,
    staff: dict[str, UserProfile],
) -> None:
    lead = Lead(first_name="Bea", last_name="Brown", email="bea@example.com")
    db_session.add(lead)
    db_session.commit()

    url = f"/api/crm/leads/{lead.id}/assign"
    payload = {"user_id": str(staff["agent"].id)}
    assert client.post(url, json=payload, headers=_auth(staff["admin_one"])).status_code == 200
    assert client.post(url, json=payload, headers=_auth(staff["admin_one"])).status_code == 200

    rows = _notifications(db_session)
    assert [(row.user_id, row.notification_type, row.message) for row in rows] == [
        (staff["agent"].id, "lead_assigned", "Lead Bea Brown has been assigned to you")
    ]


def test_feed_lists_marks_read_and_reads_all(
    client: TestClient,
    db_session: Session,
    staff: dict[str, UserProfile],
) -> None:
    lead = Lead(first_name="Cy", last_name="Cole", email="cy@example.com")
    db_session.add(lead)
    db_session.flush()
    agent_id = staff["agent"].id
    older = LeadNotification(
        user_id=agent_id,
        lead_id=lead.id,
        notification_type="new_lead",
        message="older",
        created_at=BASE_TIME,
    )
    newer = LeadNotification(
        user_id=agent_id,
        lead_id=lead.id,
        notification_type="lead_assigned",
        message="newer",
        created_at=BASE_TIME + timedelta(minutes=5),
    )
    foreign = LeadNotification(
        user_id=staff["admin_one"].id,
        lead_id=lead.id,
        notification_type="new_lead",
        message="not yours",
    )
    db_session.add_all([older, newer, foreign])
    db_session.commit()

    headers = _auth(staff["agent"])
    feed = client.get("/api/crm/notifications", headers=headers)
    assert feed.status_code == 200
    assert [item["message"] for item in feed.json()] == ["older", "newer"]

    marked = client.post(f"/api/crm/notifications/{older.id}/read", headers=headers)
    assert marked.status_code == 200
    assert marked.json()["is_read"] is True

    unread = client.get("/api/crm/notifications", params={"unread": "true"}, headers=headers)
    assert [item["message"] for item in unread.json()] == ["newer"]

    not_mine = client.post(f"/api/crm/notifications/{foreign.id}/read", headers=headers)
    assert not_mine.status_code == 404
    assert not_mine.json()["code"] == "crm_notification_read_failed"

    unknown = client.post(f"/api/crm/notifications/{uuid.uuid4()}/read", headers=headers)
    assert unknown.status_code == 404

    read_all = client.post("/api/crm/notifications/read-all", headers=headers)
    assert read_all.status_code == 200
    assert read_all.json() == {"updated": 1}

    db_session.expire_all()
    assert db_session.get(LeadNotification, foreign.id).is_read is False  # type: ignore[union-attr]


def test_published_event_record_is_bounded() -> None:
    for index in range(events.PUBLISHED_EVENTS_LIMIT + 5):
        events.publish(events.build_envelope("tests.noise", {"index": index}))

    assert len(events.published_events) == events.PUBLISHED_EVENTS_LIMIT
    assert events.published_events[0]["payload"] == {"index": 5}
    assert events.published_events[-1]["payload"] == {"index": events.PUBLISHED_EVENTS_LIMIT + 4}
