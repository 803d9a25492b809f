from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from sqlalchemy import select
from sqlalchemy.orm import Session

from leaddesk.crm.models import Lead, UserProfile


class Role(str, Enum):
    ADMIN = "admin"
    DESK = "desk"
    MANAGER = "manager"
    AGENT = "agent"


@dataclass
class DirectoryEntry:
    id: uuid.UUID
    email: str
    full_name: str
    role: Role
    manager_id: uuid.UUID | None
    created_at: datetime | None = None
    parent: int | None = None
    children: list[int] = field(default_factory=list)


class UserDirectory:
    """Snapshot of the staff tree, built once per request.

    Entries live in a flat list and point at each other by index. A
    ``manager_id`` that loops back on itself is tolerated: traversal tracks
    visited indexes and never walks more than ``len(entries)`` nodes.
    """

    def __init__(self, profiles: list[UserProfile]) -> None:
        self.entries: list[DirectoryEntry] = []
        self._index: dict[uuid.UUID, int] = {}
        for profile in profiles:
            self._index[profile.id] = len(self.entries)
            self.entries.append(
                DirectoryEntry(
                    id=profile.id,
                    email=profile.email,
                    full_name=profile.full_name,
                    role=Role(profile.role),
                    manager_id=profile.manager_id,
                    created_at=profile.created_at,
                )
            )
        for position, entry in enumerate(self.entries):
            if entry.manager_id is None:
                continue
            parent = self._index.get(entry.manager_id)
            if parent is None or parent == position:
                continue
            entry.parent = parent
            self.entries[parent].children.append(position)

    @classmethod
    def load(cls, session: Session) -> "UserDirectory":
        profiles = session.scalars(select(UserProfile).order_by(UserProfile.created_at, UserProfile.id)).all()
        return cls(list(profiles))

    def get(self, user_id: uuid.UUID) -> DirectoryEntry | None:
        position = self._index.get(user_id)
        if position is None:
            return None
        return self.entries[position]

    def __contains__(self, user_id: uuid.UUID) -> bool:
        return user_id in self._index

    def descendants(self, user_id: uuid.UUID) -> set[uuid.UUID]:
        start = self._index.get(user_id)
        if start is None:
            return set()

        visited = {start}
        queue = deque(self.entries[start].children)
        found: set[uuid.UUID] = set()
        budget = len(self.entries)
        while queue and budget > 0:
            budget -= 1
            position = queue.popleft()
            if position in visited:
                continue
            visited.add(position)
            found.add(self.entries[position].id)
            queue.extend(self.entries[position].children)
        return found

    def would_create_cycle(self, user_id: uuid.UUID, manager_id: uuid.UUID) -> bool:
        if user_id == manager_id:
            return True
        return manager_id in self.descendants(user_id)

    def admins(self) -> list[DirectoryEntry]:
        return [entry for entry in self.entries if entry.role is Role.ADMIN]

    def assignable_users(self, viewer: DirectoryEntry) -> list[DirectoryEntry]:
        match viewer.role:
            case Role.ADMIN:
                allowed = list(self.entries)
            case Role.DESK | Role.MANAGER:
                ids = self.descendants(viewer.id) | {viewer.id}
                allowed = [entry for entry in self.entries if entry.id in ids]
            case Role.AGENT:
                allowed = [viewer]
        return sorted(allowed, key=lambda entry: (entry.full_name, str(entry.id)))

    def can_assign_to(self, viewer: DirectoryEntry, target_id: uuid.UUID) -> bool:
        return any(entry.id == target_id for entry in self.assignable_users(viewer))


def can_view_lead(directory: UserDirectory, viewer: DirectoryEntry, lead: Lead) -> bool:
    match viewer.role:
        case Role.ADMIN:
            return True
        case Role.DESK:
            if lead.assigned_to is None or lead.desk == viewer.full_name:
                return True
            return lead.assigned_to == viewer.id or lead.assigned_to in directory.descendants(viewer.id)
        case Role.MANAGER:
            if lead.assigned_to is None:
                return False
            return lead.assigned_to == viewer.id or lead.assigned_to in directory.descendants(viewer.id)
        case Role.AGENT:
            return lead.assigned_to == viewer.id
