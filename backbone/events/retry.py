"""Retry policy and single-attempt execution for event handlers."""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from backbone.errors import HandlerTimeoutError
from backbone.events.models import EventEnvelope

logger = logging.getLogger(__name__)

Handler = Callable[[EventEnvelope], Awaitable[None]]
Sleep = Callable[[float], Awaitable[Any]]

# Attempts that outlived their timeout. Kept referenced until they finish on their own.
_abandoned: set[asyncio.Task] = set()


def compute_retry_delay(
    attempt: int, base: float = 0.5, max_delay: float = 30.0, jitter: bool = False
) -> float:
    """Exponential backoff: base * 2**attempt, capped at max_delay."""
    delay = min(base * (2**attempt), max_delay)
    if jitter:
        delay += random.uniform(0, delay * 0.3)
    return delay


@dataclass(frozen=True)
class RetryPolicy:
    """Per-handler retry budget for one publish."""

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    timeout: float = 30.0
    jitter: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt that follows zero-based `attempt`."""
        return compute_retry_delay(attempt, self.base_delay, self.max_delay, self.jitter)


def _discard_abandoned(task: asyncio.Task) -> None:
    _abandoned.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Timed-out handler finished late with error: %s", task.exception())


async def invoke_with_timeout(handler: Handler, envelope: EventEnvelope, timeout: float) -> None:
    """Run one handler attempt. On timeout stop waiting but leave the handler running."""
    task = asyncio.ensure_future(handler(envelope))
    done, _ = await asyncio.wait({task}, timeout=timeout)
    if task in done:
        task.result()
        return
    _abandoned.add(task)
    task.add_done_callback(_discard_abandoned)
    raise HandlerTimeoutError(f"Handler attempt timed out after {timeout:.1f}s")
