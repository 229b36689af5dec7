"""Process-wide counters for the event bus and cache invalidation.

Both objects are built once by bootstrap and injected; there is no module-level instance.
"""

import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

__all__ = ["EventBusMetrics", "InvalidationMetrics", "MetricsContext"]


class EventBusMetrics:
    """Per-event-name counters for publish, success, failure and dead-letter outcomes."""

    def __init__(self, max_samples: int = 100) -> None:
        self._lock = threading.Lock()
        self._max_samples = max_samples
        self._reset_unlocked()

    def _reset_unlocked(self) -> None:
        self._published: dict[str, int] = defaultdict(int)
        self._succeeded: dict[str, int] = defaultdict(int)
        self._failed: dict[str, int] = defaultdict(int)
        self._dead_lettered: dict[str, int] = defaultdict(int)
        self._dlq_store_failures: dict[str, int] = defaultdict(int)
        self._processing_times: dict[str, list[float]] = defaultdict(list)

    def record_published(self, event_name: str) -> None:
        with self._lock:
            self._published[event_name] += 1

    def record_succeeded(self, event_name: str, duration: float) -> None:
        with self._lock:
            self._succeeded[event_name] += 1
            samples = self._processing_times[event_name]
            samples.append(duration)
            if len(samples) > self._max_samples:
                del samples[0]

    def record_failed(self, event_name: str) -> None:
        with self._lock:
            self._failed[event_name] += 1

    def record_dead_lettered(self, event_name: str) -> None:
        with self._lock:
            self._dead_lettered[event_name] += 1

    def record_dlq_store_failure(self, event_name: str) -> None:
        with self._lock:
            self._dlq_store_failures[event_name] += 1

    def snapshot(self) -> dict[str, Any]:
        """Copy of all counters plus average processing time per event name."""
        with self._lock:
            averages = {
                name: sum(times) / len(times)
                for name, times in self._processing_times.items()
                if times
            }
            return {
                "published": dict(self._published),
                "succeeded": dict(self._succeeded),
                "failed": dict(self._failed),
                "dead_lettered": dict(self._dead_lettered),
                "dlq_store_failures": dict(self._dlq_store_failures),
                "total_published": sum(self._published.values()),
                "total_failed": sum(self._failed.values()),
                "average_processing_times": averages,
            }

    def reset(self) -> None:
        with self._lock:
            self._reset_unlocked()


class InvalidationMetrics:
    """Counters for cache evictions. Accumulates until reset() is called."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reset_unlocked()

    def _reset_unlocked(self) -> None:
        self._by_entity_type: dict[str, int] = defaultdict(int)
        self._pattern_invalidations = 0
        self._key_invalidations = 0
        self._failed_invalidations = 0
        self._last_invalidation: dict[str, Any] | None = None

    def record_entity(self, entity_type: str, entity_id: str) -> None:
        with self._lock:
            self._by_entity_type[entity_type] += 1
            self._last_invalidation = {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "at": time.time(),
            }

    def record_key(self, key: str) -> None:
        with self._lock:
            self._key_invalidations += 1
            self._last_invalidation = {"key": key, "at": time.time()}

    def record_pattern(self, pattern: str) -> None:
        with self._lock:
            self._pattern_invalidations += 1
            self._last_invalidation = {"pattern": pattern, "at": time.time()}

    def record_failure(self) -> None:
        with self._lock:
            self._failed_invalidations += 1

    @property
    def failed_invalidations(self) -> int:
        with self._lock:
            return self._failed_invalidations

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "invalidations_by_entity_type": dict(self._by_entity_type),
                "pattern_invalidations": self._pattern_invalidations,
                "key_invalidations": self._key_invalidations,
                "failed_invalidations": self._failed_invalidations,
                "last_invalidation": (
                    dict(self._last_invalidation) if self._last_invalidation else None
                ),
            }

    def reset(self) -> None:
        with self._lock:
            self._reset_unlocked()


@dataclass
class MetricsContext:
    """Metrics owned by process bootstrap and handed to the bus and cache manager."""

    events: EventBusMetrics = field(default_factory=EventBusMetrics)
    cache: InvalidationMetrics = field(default_factory=InvalidationMetrics)
