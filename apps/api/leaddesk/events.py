from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from leaddesk.context import get_correlation_id
from leaddesk.core.events import event_bus

# Recent envelopes only; the bus is the delivery path.
PUBLISHED_EVENTS_LIMIT = 1000
published_events: deque[dict[str, Any]] = deque(maxlen=PUBLISHED_EVENTS_LIMIT)


def build_envelope(event_type: str, payload: dict[str, Any], actor: str | None = None) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor": actor,
        "version": 1,
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
