"""Error taxonomy for the event backbone.

Handler errors stay inside the bus; everything else is raised to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass


class BackboneError(Exception):
    """Base class for all backbone errors."""


class HandlerError(BackboneError):
    """Raised by an event handler to classify its failure."""


class TransientHandlerError(HandlerError):
    """Retryable failure (network blip, temporary unavailability)."""


class HandlerTimeoutError(TransientHandlerError):
    """A single handler attempt exceeded its timeout."""


class PermanentHandlerError(HandlerError):
    """Poison payload: retrying can never succeed. Goes straight to the DLQ."""


class StoreUnavailableError(BackboneError):
    """Dead-letter persistence is unreachable."""


class NotFoundError(BackboneError):
    """Operation on a dead-letter id that does not exist."""

    def __init__(self, entry_id: str) -> None:
        super().__init__(f"Dead-letter entry not found: {entry_id}")
        self.entry_id = entry_id


class HandlerUnavailableError(BackboneError):
    """Retry requested but the originating handler is no longer registered."""

    def __init__(self, event_name: str, handler_id: str) -> None:
        super().__init__(f"No handler {handler_id!r} registered for {event_name!r}")
        self.event_name = event_name
        self.handler_id = handler_id


class ConfigurationError(BackboneError):
    """Wiring mistake detected at startup or in tests."""


class UnknownEventError(ConfigurationError):
    """Event name is not in the event registry."""

    def __init__(self, event_name: str) -> None:
        super().__init__(f"Event type not registered: {event_name!r}")
        self.event_name = event_name


class InvalidPayloadError(BackboneError, ValueError):
    """Payload does not match the schema registered for the event name."""

    def __init__(self, event_name: str, detail: str) -> None:
        super().__init__(f"Invalid payload for {event_name!r}: {detail}")
        self.event_name = event_name
        self.detail = detail


@dataclass(frozen=True)
class HandlerFailure:
    """Final outcome of one handler that did not succeed for one publish."""

    handler_id: str
    error: BaseException
    retry_count: int
    dead_lettered: bool


class EventDispatchError(BackboneError):
    """One or more handlers ultimately failed for a synchronously awaited publish."""

    def __init__(self, event_name: str, event_id: str, failures: list[HandlerFailure]) -> None:
        handlers = ", ".join(f.handler_id for f in failures)
        super().__init__(
            f"{len(failures)} handler(s) failed for {event_name} ({event_id}): {handlers}"
        )
        self.event_name = event_name
        self.event_id = event_id
        self.failures = failures
