from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


logger = logging.getLogger("ghostcrm.events")

Envelope = dict[str, Any]


@dataclass(frozen=True, slots=True)
class TelecomEvent:
    event_type: str
    envelope: Envelope

    @property
    def organization_id(self) -> str | None:
        return self.envelope.get("organization_id")

    @property
    def message_id(self) -> str | None:
        return self.envelope.get("message_id")


EventHandler = Callable[[TelecomEvent], None]


class TelecomEventBus:
    """Synchronous fan-out of message lifecycle events to in-process subscribers.

    Publishing happens after the owning transaction has committed, so a failing
    subscriber is logged and skipped; it never reaches the request that caused
    the event.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_type: str, envelope: Envelope) -> int:
        """Deliver to every subscriber of ``event_type``; returns how many succeeded."""
        event = TelecomEvent(event_type=event_type, envelope=envelope)
        delivered = 0
        for handler in list(self._subscribers.get(event_type, [])):
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "event.handler_failed",
                    extra={
                        "event_type": event_type,
                        "handler": getattr(handler, "__qualname__", repr(handler)),
                        "organization_id": event.organization_id,
                        "message_id": event.message_id,
                    },
                )
                continue
            delivered += 1
        return delivered


event_bus = TelecomEventBus()
