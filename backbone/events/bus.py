"""In-process event transport: publish -> fan out to handlers -> retry -> dead-letter.

Every handler of one publish runs in its own task, so one handler's failure or slowness
never affects another. A handler's own attempts run strictly one after the other.
"""

import asyncio
import logging
import time
import traceback
from collections import deque
from typing import Awaitable, Protocol

from backbone.errors import (
    EventDispatchError,
    HandlerFailure,
    PermanentHandlerError,
)
from backbone.events.models import DeadLetterRecord, DispatchMode, EventEnvelope
from backbone.events.registry import EventRegistry
from backbone.events.retry import Handler, RetryPolicy, Sleep, invoke_with_timeout
from backbone.events.subscriptions import Subscription, Subscriptions
from backbone.metrics import EventBusMetrics

logger = logging.getLogger(__name__)


class DeadLetterSink(Protocol):
    """Where exhausted handler attempts are recorded."""

    def store(self, record: DeadLetterRecord) -> Awaitable[object]: ...


class EventBus:
    """Publish/subscribe core with per-handler isolation, bounded retry and DLQ escalation."""

    def __init__(
        self,
        registry: EventRegistry,
        subscriptions: Subscriptions,
        metrics: EventBusMetrics,
        dead_letters: DeadLetterSink | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        record_history: bool = False,
        history_limit: int = 1000,
    ) -> None:
        self._registry = registry
        self._subscriptions = subscriptions
        self._metrics = metrics
        self._dead_letters = dead_letters
        self._policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._record_history = record_history
        self._history: deque[EventEnvelope] = deque(maxlen=history_limit)
        self._inflight: set[asyncio.Task] = set()

    @property
    def registry(self) -> EventRegistry:
        return self._registry

    def subscribe(
        self, event_name: str, handler_id: str, handler: Handler, once: bool = False
    ) -> None:
        """Register handler under (event_name, handler_id). Same key again replaces it.

        A once subscription is removed when the first publish of event_name dispatches
        to it, so it sees exactly one event.
        """
        if not callable(handler):
            raise TypeError("Event handler must be callable")
        self._registry.get(event_name)
        self._subscriptions.add(event_name, handler_id, handler, once=once)
        logger.debug(
            "Registered %shandler %s for event %s",
            "one-shot " if once else "",
            handler_id,
            event_name,
        )

    def unsubscribe(self, event_name: str, handler_id: str) -> bool:
        removed = self._subscriptions.remove(event_name, handler_id)
        if removed:
            logger.debug("Removed handler %s for event %s", handler_id, event_name)
        return removed

    def unsubscribe_all(self, event_name: str) -> int:
        """Remove every handler of event_name. Returns how many were removed."""
        removed = self._subscriptions.remove_all(event_name)
        logger.debug("Removed all %d handler(s) for event %s", removed, event_name)
        return removed

    def has_handler(self, event_name: str, handler_id: str) -> bool:
        return self._subscriptions.get(event_name, handler_id) is not None

    async def publish(
        self,
        event_name: str,
        payload: dict,
        *,
        correlation_id: str | None = None,
        source_id: str | None = None,
        mode: DispatchMode = DispatchMode.AWAIT,
    ) -> EventEnvelope:
        """Publish an event to all handlers of event_name.

        AWAIT: returns after every handler has settled; raises EventDispatchError if any
        handler ultimately failed (after its DLQ entry was attempted).
        DECOUPLED: returns as soon as handler tasks are started.
        """
        normalized = self._registry.validate(event_name, payload)
        envelope = EventEnvelope(
            name=event_name,
            payload=normalized,
            correlation_id=correlation_id,
            source_id=source_id,
        )
        if self._record_history:
            self._history.appendleft(envelope)
        self._metrics.record_published(event_name)
        logger.info(
            "Publishing event %s (%s, correlation_id=%s)",
            event_name,
            envelope.id,
            correlation_id,
        )

        subscriptions = [
            sub
            for sub in self._subscriptions.for_event(event_name)
            if not sub.once or self._subscriptions.claim(sub)
        ]
        tasks = [
            asyncio.create_task(self._run_handler(envelope, sub)) for sub in subscriptions
        ]
        if not tasks:
            return envelope

        if mode is DispatchMode.DECOUPLED:
            settle = asyncio.create_task(self._settle(envelope, tasks))
            self._inflight.add(settle)
            settle.add_done_callback(self._inflight.discard)
            return envelope

        failures = [f for f in await asyncio.gather(*tasks) if f is not None]
        if failures:
            raise EventDispatchError(event_name, envelope.id, failures)
        return envelope

    async def _settle(self, envelope: EventEnvelope, tasks: list[asyncio.Task]) -> None:
        failures = [f for f in await asyncio.gather(*tasks) if f is not None]
        if failures:
            logger.warning(
                "EventBus: %d handler(s) failed for decoupled event %s/%s",
                len(failures),
                envelope.name,
                envelope.id,
            )

    async def _run_handler(
        self, envelope: EventEnvelope, sub: Subscription
    ) -> HandlerFailure | None:
        """Attempt loop for one handler. Never raises; returns the failure, if any."""
        error: BaseException | None = None
        error_stack: str | None = None
        retry_count = 0
        for attempt in range(self._policy.max_attempts):
            started = time.monotonic()
            try:
                await invoke_with_timeout(sub.handler, envelope.isolated(), self._policy.timeout)
            except PermanentHandlerError as e:
                error, error_stack, retry_count = e, traceback.format_exc(), 0
                logger.error(
                    "EventBus handler %s rejected event %s/%s as poison: %s",
                    sub.handler_id,
                    envelope.name,
                    envelope.id,
                    e,
                )
                break
            except Exception as e:
                error, error_stack, retry_count = e, traceback.format_exc(), attempt + 1
                logger.warning(
                    "EventBus handler %s failed for event %s/%s (attempt %d/%d): %s",
                    sub.handler_id,
                    envelope.name,
                    envelope.id,
                    attempt + 1,
                    self._policy.max_attempts,
                    e,
                )
                if attempt + 1 < self._policy.max_attempts:
                    await self._sleep(self._policy.delay_for(attempt))
                continue
            self._metrics.record_succeeded(envelope.name, time.monotonic() - started)
            return None

        if error is None:
            raise RuntimeError(f"Handler {sub.handler_id} left the retry loop without a result")
        self._metrics.record_failed(envelope.name)
        dead_lettered = await self._dead_letter(
            DeadLetterRecord.from_failure(envelope, sub.handler_id, error, error_stack, retry_count)
        )
        return HandlerFailure(
            handler_id=sub.handler_id,
            error=error,
            retry_count=retry_count,
            dead_lettered=dead_lettered,
        )

    async def _dead_letter(self, record: DeadLetterRecord) -> bool:
        """Hand the failure to the DLQ. A broken DLQ is logged, never raised."""
        if self._dead_letters is None:
            logger.error(
                "EventBus: no dead-letter queue, dropping failure of %s for %s/%s",
                record.handler_id,
                record.event_name,
                record.event_id,
            )
            self._metrics.record_dlq_store_failure(record.event_name)
            return False
        try:
            await self._dead_letters.store(record)
        except Exception as e:
            logger.exception(
                "EventBus: failed to store %s/%s for handler %s in DLQ: %s",
                record.event_name,
                record.event_id,
                record.handler_id,
                e,
            )
            self._metrics.record_dlq_store_failure(record.event_name)
            return False
        self._metrics.record_dead_lettered(record.event_name)
        logger.error(
            "EventBus: dead-lettered event %s/%s for handler %s after %d retries: %s",
            record.event_name,
            record.event_id,
            record.handler_id,
            record.retry_count,
            record.error_message,
        )
        return True

    async def drain(self) -> None:
        """Wait for every decoupled dispatch still in flight."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight))

    async def stop(self) -> None:
        """Graceful shutdown: let in-flight handlers settle."""
        await self.drain()
        logger.info("EventBus stopped")

    def get_event_history(
        self,
        event_name: str | None = None,
        correlation_id: str | None = None,
        limit: int | None = None,
    ) -> list[EventEnvelope]:
        """Recently published envelopes, newest first. Empty when history is off."""
        history = [
            e
            for e in self._history
            if (event_name is None or e.name == event_name)
            and (correlation_id is None or e.correlation_id == correlation_id)
        ]
        if limit is not None and limit > 0:
            history = history[:limit]
        return history

    def get_metrics(self) -> dict:
        result = self._metrics.snapshot()
        result["handler_counts"] = {
            name: self._subscriptions.count(name) for name in self._registry.names()
        }
        return result

    def reset(self) -> None:
        """Clear event history and bus metrics."""
        self._history.clear()
        self._metrics.reset()
        logger.debug("Event bus history and metrics reset")


__all__ = ["DeadLetterSink", "EventBus"]
