"""Event backbone: in-process bus, event registry and dead-letter queue."""

from backbone.events.bus import EventBus
from backbone.events.dead_letter import DeadLetterQueueService, DeadLetterStore
from backbone.events.models import (
    DeadLetterEntry,
    DeadLetterFilter,
    DeadLetterRecord,
    DeadLetterStatus,
    DispatchMode,
    EventEnvelope,
)
from backbone.events.registry import EventRegistry
from backbone.events.retry import RetryPolicy
from backbone.events.subscriptions import Subscriptions
from backbone.events.topics import DomainEvents

__all__ = [
    "DeadLetterEntry",
    "DeadLetterFilter",
    "DeadLetterQueueService",
    "DeadLetterRecord",
    "DeadLetterStatus",
    "DeadLetterStore",
    "DispatchMode",
    "DomainEvents",
    "EventBus",
    "EventEnvelope",
    "EventRegistry",
    "RetryPolicy",
    "Subscriptions",
]
