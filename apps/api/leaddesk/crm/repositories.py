from __future__ import annotations

from typing import Any

from sqlalchemy import Select, false, or_

from leaddesk.crm.hierarchy import DirectoryEntry, Role, UserDirectory
from leaddesk.crm.models import Lead


class LeadRepository:
    def apply_scope_query(
        self,
        query: Select[Any],
        directory: UserDirectory,
        viewer: DirectoryEntry,
    ) -> Select[Any]:
        match viewer.role:
            case Role.ADMIN:
                return query
            case Role.DESK:
                owners = directory.descendants(viewer.id) | {viewer.id}
                return query.where(
                    or_(
                        Lead.assigned_to.in_(owners),
                        Lead.assigned_to.is_(None),
                        Lead.desk == viewer.full_name,
                    )
                )
            case Role.MANAGER:
                owners = directory.descendants(viewer.id) | {viewer.id}
                return query.where(Lead.assigned_to.in_(owners))
            case Role.AGENT:
                return query.where(Lead.assigned_to == viewer.id)
        return query.where(false())
