"""Bus consumer that turns domain entity events into cache invalidations."""

import logging
from typing import Awaitable, Callable

from pydantic import BaseModel

from backbone.cache.manager import CacheInvalidationManager
from backbone.events.bus import EventBus
from backbone.events.models import EventEnvelope
from backbone.events.topics import BOUNDED_CONTEXTS, MUTATIONS

logger = logging.getLogger(__name__)

HANDLER_PREFIX = "cache-invalidation"


def handler_id_for(event_name: str) -> str:
    return f"{HANDLER_PREFIX}:{event_name}"


class CacheInvalidationHandlers:
    """Subscribes <Context>Created/Updated/Deleted events to the invalidation manager.

    Handlers never raise. A payload without a usable entity id can never be fixed by
    retrying, so it is logged and acknowledged instead of burning the retry budget.
    """

    def __init__(
        self,
        manager: CacheInvalidationManager,
        contexts: dict[str, tuple[str, str, type[BaseModel]]] | None = None,
    ) -> None:
        self._manager = manager
        self._contexts = contexts if contexts is not None else BOUNDED_CONTEXTS

    def register(self, bus: EventBus) -> list[str]:
        """Subscribe every handler on bus. Returns the subscribed event names."""
        names: list[str] = []
        for context, (entity_type, id_field, _schema) in self._contexts.items():
            for mutation in MUTATIONS:
                event_name = f"{context}{mutation}"
                bus.subscribe(
                    event_name,
                    handler_id_for(event_name),
                    self.make_handler(entity_type, id_field, evict_lists=mutation != "Updated"),
                )
                names.append(event_name)
        logger.info("Cache invalidation handlers registered for %d events", len(names))
        return names

    def make_handler(
        self, entity_type: str, id_field: str, evict_lists: bool = False
    ) -> Callable[[EventEnvelope], Awaitable[None]]:
        async def handle(event: EventEnvelope) -> None:
            payload = event.payload if isinstance(event.payload, dict) else {}
            entity_id = payload.get(id_field)
            if not isinstance(entity_id, str) or not entity_id:
                logger.warning(
                    "Cache invalidation skipped for %s/%s: payload has no valid %s",
                    event.name,
                    event.id,
                    id_field,
                )
                return
            await self._manager.invalidate(entity_type, entity_id, related=payload)
            if evict_lists:
                await self._manager.invalidate_list_caches(entity_type)

        handle.__name__ = f"invalidate_{entity_type}"
        return handle
