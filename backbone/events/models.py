"""Event envelope and dead-letter data model."""

import copy
import json
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

__all__ = [
    "DeadLetterEntry",
    "DeadLetterFilter",
    "DeadLetterRecord",
    "DeadLetterStatus",
    "DispatchMode",
    "EventEnvelope",
    "RetryAllResult",
    "RetryDetail",
]


class DispatchMode(str, Enum):
    """How publish() waits for handlers."""

    AWAIT = "await"
    DECOUPLED = "decoupled"


class DeadLetterStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class EventEnvelope:
    """Immutable event passed to handlers.

    Each handler attempt receives its own copy (see isolated()), so one handler's
    mutations never reach another handler or the dead-letter record.
    """

    name: str
    payload: dict
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str | None = None
    source_id: str | None = None
    occurred_at: float = field(default_factory=time.time)

    def isolated(self) -> "EventEnvelope":
        """Copy with a private deep copy of payload."""
        return replace(self, payload=copy.deepcopy(self.payload))


@dataclass(frozen=True)
class DeadLetterRecord:
    """What the bus hands to the DLQ when a handler gives up."""

    event_id: str
    event_name: str
    event_data: dict
    handler_id: str
    error_message: str
    error_stack: str | None = None
    retry_count: int = 0
    correlation_id: str | None = None
    source_id: str | None = None

    @classmethod
    def from_failure(
        cls,
        envelope: EventEnvelope,
        handler_id: str,
        error: BaseException,
        error_stack: str | None,
        retry_count: int,
    ) -> "DeadLetterRecord":
        return cls(
            event_id=envelope.id,
            event_name=envelope.name,
            event_data=copy.deepcopy(envelope.payload),
            handler_id=handler_id,
            error_message=str(error) or type(error).__name__,
            error_stack=error_stack,
            retry_count=retry_count,
            correlation_id=envelope.correlation_id,
            source_id=envelope.source_id,
        )


@dataclass
class DeadLetterEntry:
    """Internal representation of an event_dead_letter_queue row."""

    id: str
    event_id: str
    event_name: str
    event_data: dict
    handler_id: str
    error_message: str
    error_stack: str | None
    retry_count: int
    last_retry_at: float | None
    created_at: float
    status: DeadLetterStatus
    correlation_id: str | None = None
    source_id: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "DeadLetterEntry":
        """Build from a row selected with DeadLetterStore column order."""
        data = json.loads(row[3]) if isinstance(row[3], str) else row[3]
        return cls(
            id=row[0],
            event_id=row[1],
            event_name=row[2],
            event_data=data or {},
            handler_id=row[4],
            error_message=row[5],
            error_stack=row[6],
            retry_count=row[7],
            last_retry_at=row[8],
            created_at=row[9],
            status=DeadLetterStatus(row[10]),
            correlation_id=row[11],
            source_id=row[12],
        )

    def to_envelope(self) -> EventEnvelope:
        """Rebuild the envelope for replay. Keeps the original event id."""
        return EventEnvelope(
            id=self.event_id,
            name=self.event_name,
            payload=copy.deepcopy(self.event_data),
            correlation_id=self.correlation_id,
            source_id=self.source_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "event_name": self.event_name,
            "event_data": self.event_data,
            "handler_id": self.handler_id,
            "error_message": self.error_message,
            "error_stack": self.error_stack,
            "retry_count": self.retry_count,
            "last_retry_at": self.last_retry_at,
            "created_at": self.created_at,
            "status": self.status.value,
            "correlation_id": self.correlation_id,
            "source_id": self.source_id,
        }


@dataclass(frozen=True)
class DeadLetterFilter:
    """Query filter for listing dead letters. Dates are epoch seconds, inclusive."""

    event_name: str | None = None
    status: DeadLetterStatus | str | None = None
    from_date: float | None = None
    to_date: float | None = None


# --- Result models (returned by the DLQ service and the admin facade) ---


class RetryDetail(BaseModel):
    id: str
    event_name: str
    success: bool
    error: str | None = None


class RetryAllResult(BaseModel):
    """Outcome of retry_all. succeeded + failed == attempted."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    details: list[RetryDetail] = Field(default_factory=list)
