from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from leaddesk.crm.countries import normalize_country
from leaddesk.crm.hierarchy import Role, UserDirectory, can_view_lead
from leaddesk.crm.models import Lead, UserProfile

BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _profile(name: str, role: str, manager: UserProfile | None = None, offset: int = 0) -> UserProfile:
    return UserProfile(
        id=uuid.uuid4(),
        email=f"{name.lower().replace(' ', '.')}@example.com",
        full_name=name,
        role=role,
        manager_id=manager.id if manager is not None else None,
        created_at=BASE_TIME + timedelta(minutes=offset),
    )


@pytest.fixture()
def staff() -> dict[str, UserProfile]:
    admin = _profile("Admin", "admin", offset=0)
    desk = _profile("Desk A", "desk", offset=1)
    manager = _profile("Manager M", "manager", desk, offset=2)
    agent_a = _profile("Agent A", "agent", manager, offset=3)
    agent_b = _profile("Agent B", "agent", offset=4)
    return {"admin": admin, "desk": desk, "manager": manager, "agent_a": agent_a, "agent_b": agent_b}


@pytest.fixture()
def directory(staff: dict[str, UserProfile]) -> UserDirectory:
    return UserDirectory(list(staff.values()))


def _lead(assigned_to: uuid.UUID | None, desk: str | None = None) -> Lead:
    return Lead(first_name="L", last_name="L", email="l@example.com", assigned_to=assigned_to, desk=desk)


def test_descendants_walk_the_whole_subtree(directory: UserDirectory, staff: dict[str, UserProfile]) -> None:
    assert directory.descendants(staff["desk"].id) == {staff["manager"].id, staff["agent_a"].id}
    assert directory.descendants(staff["manager"].id) == {staff["agent_a"].id}
    assert directory.descendants(staff["agent_b"].id) == set()
    assert directory.descendants(uuid.uuid4()) == set()


def test_looping_manager_chain_terminates() -> None:
    first = _profile("First", "manager")
    second = _profile("Second", "manager", first)
    first.manager_id = second.id
    lonely = _profile("Lonely", "agent")
    lonely.manager_id = lonely.id

    directory = UserDirectory([first, second, lonely])

    assert directory.descendants(first.id) == {second.id}
    assert directory.descendants(second.id) == {first.id}
    assert directory.descendants(lonely.id) == set()


def test_would_create_cycle(directory: UserDirectory, staff: dict[str, UserProfile]) -> None:
    assert directory.would_create_cycle(staff["desk"].id, staff["agent_a"].id)
    assert directory.would_create_cycle(staff["manager"].id, staff["manager"].id)
    assert not directory.would_create_cycle(staff["agent_b"].id, staff["manager"].id)


def test_admins_and_roles(directory: UserDirectory, staff: dict[str, UserProfile]) -> None:
    assert [entry.id for entry in directory.admins()] == [staff["admin"].id]
    entry = directory.get(staff["desk"].id)
    assert entry is not None and entry.role is Role.DESK
    assert staff["agent_b"].id in directory
    assert uuid.uuid4() not in directory


def test_assignable_users_by_role(directory: UserDirectory, staff: dict[str, UserProfile]) -> None:
    def names(viewer: str) -> list[str]:
        entry = directory.get(staff[viewer].id)
        assert entry is not None
        return [item.full_name for item in directory.assignable_users(entry)]

    assert names("admin") == ["Admin", "Agent A", "Agent B", "Desk A", "Manager M"]
    assert names("desk") == ["Agent A", "Desk A", "Manager M"]
    assert names("manager") == ["Agent A", "Manager M"]
    assert names("agent_b") == ["Agent B"]

    manager = directory.get(staff["manager"].id)
    assert manager is not None
    assert directory.can_assign_to(manager, staff["agent_a"].id)
    assert not directory.can_assign_to(manager, staff["agent_b"].id)


def test_lead_visibility_rules(directory: UserDirectory, staff: dict[str, UserProfile]) -> None:
    lead_a = _lead(staff["agent_a"].id)
    lead_b = _lead(staff["agent_b"].id)
    unassigned = _lead(None)
    desk_labelled = _lead(staff["agent_b"].id, desk="Desk A")

    def visible(viewer: str) -> list[bool]:
        entry = directory.get(staff[viewer].id)
        assert entry is not None
        return [can_view_lead(directory, entry, lead) for lead in (lead_a, lead_b, unassigned, desk_labelled)]

    assert visible("admin") == [True, True, True, True]
    assert visible("desk") == [True, False, True, True]
    assert visible("manager") == [True, False, False, False]
    assert visible("agent_a") == [True, False, False, False]
    assert visible("agent_b") == [False, True, False, True]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Italy", "IT"),
        ("  italy ", "IT"),
        ("it", "IT"),
        ("United Kingdom", "GB"),
        ("Atlantis", "ATLANTIS"),
    ],
)
def test_normalize_country(raw: str, expected: str) -> None:
    assert normalize_country(raw) == expected
