from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractContextManager
from typing import Any

from sqlalchemy.orm import Session

from leaddesk.core.config import get_settings
from leaddesk.core.events import InProcessEventBus, InternalEvent
from leaddesk.crm.service import LEAD_ASSIGNED_EVENT, NotificationService
from leaddesk.intake.service import LEAD_CREATED_EVENT

logger = logging.getLogger("leaddesk.notifications")

SessionScope = Callable[[], AbstractContextManager[Session]]


class LeadNotificationSubscriber:
    """Turns lead events into rows of the staff notification feed."""

    event_types = (LEAD_CREATED_EVENT, LEAD_ASSIGNED_EVENT)

    def __init__(self, session_scope: SessionScope, service: NotificationService | None = None) -> None:
        self._session_scope = session_scope
        self._service = service or NotificationService()

    def register(self, bus: InProcessEventBus) -> None:
        for event_type in self.event_types:
            bus.subscribe(event_type, self.handle)

    def unregister(self, bus: InProcessEventBus) -> None:
        for event_type in self.event_types:
            bus.unsubscribe(event_type, self.handle)

    def handle(self, event: InternalEvent) -> None:
        if not get_settings().notifications_enabled:
            return
        envelope: dict[str, Any] = event.payload if isinstance(event.payload, dict) else {}
        payload = envelope.get("payload")
        if not isinstance(payload, dict):
            return

        try:
            with self._session_scope() as session:
                if event.name == LEAD_CREATED_EVENT:
                    notification_type = "new_lead"
                    count = self._service.notify_lead_created(session, payload)
                else:
                    notification_type = "lead_assigned"
                    count = self._service.notify_lead_assigned(session, payload)
        except Exception as exc:
            logger.exception(
                "notifications.failed",
                extra={"event_name": event.name, "lead_id": payload.get("lead_id"), "error": str(exc)},
            )
            return

        if count:
            logger.info(
                "notifications.created",
                extra={
                    "event_name": event.name,
                    "lead_id": payload.get("lead_id"),
                    "notification_type": notification_type,
                    "count": count,
                },
            )
