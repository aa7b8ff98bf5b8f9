from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from funnelcrm.context import get_correlation_id
from funnelcrm.core.events import event_bus

ENVELOPE_VERSION = 1

# Every envelope published in this process, oldest first. Tests clear it.
published_events: list[dict[str, Any]] = []


def build_envelope(
    event_type: str,
    *,
    company_id: int,
    actor_user_id: int | None,
    payload: dict[str, Any],
) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "version": ENVELOPE_VERSION,
        "company_id": company_id,
        "actor_user_id": actor_user_id,
        "correlation_id": get_correlation_id(),
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> int:
    """Record ``envelope`` and hand it to bus subscribers; returns the handler count."""
    event_type = envelope.get("event_type")
    if not isinstance(event_type, str) or not event_type:
        raise ValueError("event envelope requires an event_type")

    envelope.setdefault("correlation_id", get_correlation_id())
    published_events.append(envelope)
    return event_bus.publish(event_type, envelope)
