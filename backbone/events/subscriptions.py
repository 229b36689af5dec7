"""In-memory handler table shared by the event bus and the DLQ replay path."""

import logging
from dataclasses import dataclass

from backbone.events.retry import Handler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Subscription:
    event_name: str
    handler_id: str
    handler: Handler
    once: bool = False


class Subscriptions:
    """Handlers keyed by (event_name, handler_id), kept in registration order per event."""

    def __init__(self) -> None:
        self._by_event: dict[str, dict[str, Subscription]] = {}

    def add(self, event_name: str, handler_id: str, handler: Handler, once: bool = False) -> bool:
        """Register handler. Returns True if an existing registration was replaced."""
        subs = self._by_event.setdefault(event_name, {})
        replaced = handler_id in subs
        # dict assignment on an existing key keeps its original position
        subs[handler_id] = Subscription(event_name, handler_id, handler, once)
        if replaced:
            logger.warning("Handler %s for %s replaced", handler_id, event_name)
        return replaced

    def remove(self, event_name: str, handler_id: str) -> bool:
        subs = self._by_event.get(event_name)
        if not subs or handler_id not in subs:
            return False
        del subs[handler_id]
        return True

    def remove_all(self, event_name: str) -> int:
        """Drop every handler of event_name. Returns how many were removed."""
        return len(self._by_event.pop(event_name, {}))

    def claim(self, sub: Subscription) -> bool:
        """Remove a one-shot subscription if it is still the registered one."""
        subs = self._by_event.get(sub.event_name, {})
        if subs.get(sub.handler_id) is not sub:
            return False
        del subs[sub.handler_id]
        return True

    def get(self, event_name: str, handler_id: str) -> Handler | None:
        sub = self._by_event.get(event_name, {}).get(handler_id)
        return sub.handler if sub is not None else None

    def for_event(self, event_name: str) -> list[Subscription]:
        """Snapshot of subscriptions for event_name in registration order."""
        return list(self._by_event.get(event_name, {}).values())

    def count(self, event_name: str) -> int:
        return len(self._by_event.get(event_name, {}))
