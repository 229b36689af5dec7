"""Event type registry: every publishable event name with its payload schema."""

import copy
import logging
import time
from dataclasses import dataclass, field

from pydantic import BaseModel, ValidationError

from backbone.errors import InvalidPayloadError, UnknownEventError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventType:
    """Metadata for one registered event name."""

    name: str
    schema: type[BaseModel] | None = None
    description: str = ""
    category: str = "uncategorized"
    registered_at: float = field(default_factory=time.time)


class EventRegistry:
    """Known event names. Publishing or subscribing to anything else is a wiring error."""

    def __init__(self) -> None:
        self._types: dict[str, EventType] = {}

    def register(
        self,
        name: str,
        schema: type[BaseModel] | None = None,
        description: str = "",
        category: str = "uncategorized",
    ) -> "EventRegistry":
        self._types[name] = EventType(
            name=name, schema=schema, description=description, category=category
        )
        logger.debug("Event type registered: %s (%s)", name, category)
        return self

    def is_registered(self, name: str) -> bool:
        return name in self._types

    def get(self, name: str) -> EventType:
        try:
            return self._types[name]
        except KeyError:
            raise UnknownEventError(name) from None

    def names(self) -> list[str]:
        return list(self._types)

    def validate(self, name: str, payload: dict) -> dict:
        """Check payload against the registered schema. Returns the normalized payload."""
        event_type = self.get(name)
        if not isinstance(payload, dict):
            raise InvalidPayloadError(name, f"expected a mapping, got {type(payload).__name__}")
        if event_type.schema is None:
            return copy.deepcopy(payload)
        try:
            model = event_type.schema.model_validate(payload)
        except ValidationError as e:
            raise InvalidPayloadError(name, str(e)) from e
        return model.model_dump(exclude_none=True)
