from __future__ import annotations

from collections import deque
from typing import Any

from ghostcrm.context import get_correlation_id
from ghostcrm.core.events import event_bus

RECENT_EVENTS_LIMIT = 500

# Most recent envelopes only; older ones fall off the left.
published_events: deque[dict[str, Any]] = deque(maxlen=RECENT_EVENTS_LIMIT)


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
