"""Bootstrap: settings -> logging -> metrics -> subscriptions -> DLQ -> bus -> cache -> admin.

Components are built in this fixed order and handed to each other through constructors.
The bus and the DLQ service share one Subscriptions table, so replay sees exactly the
handlers the bus dispatches to.
"""

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from backbone.admin import AdminService
from backbone.cache import (
    CacheBackend,
    CacheInvalidationHandlers,
    CacheInvalidationManager,
    MemoryCacheBackend,
    RedisCacheBackend,
    register_default_dependencies,
)
from backbone.events import (
    DeadLetterQueueService,
    DeadLetterStatus,
    DeadLetterStore,
    EventBus,
    RetryPolicy,
    Subscriptions,
)
from backbone.events.models import DeadLetterFilter
from backbone.events.registry import EventRegistry
from backbone.events.retry import Sleep
from backbone.events.topics import build_default_registry
from backbone.logging_config import setup_logging
from backbone.metrics import MetricsContext
from backbone.settings import get_setting, load_settings

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


@dataclass
class Backbone:
    """Every wired component. Owned by the host process."""

    settings: dict[str, Any]
    metrics: MetricsContext
    registry: EventRegistry
    subscriptions: Subscriptions
    dead_letters: DeadLetterQueueService
    bus: EventBus
    cache_backend: CacheBackend
    cache_manager: CacheInvalidationManager
    cache_handlers: CacheInvalidationHandlers
    admin: AdminService

    async def start(self) -> None:
        await self.dead_letters.open()

    async def stop(self) -> None:
        await self.bus.stop()
        await self.dead_letters.close()
        if isinstance(self.cache_backend, RedisCacheBackend):
            await self.cache_backend.close()


def _build_retry_policy(settings: dict) -> RetryPolicy:
    eb_cfg = settings.get("event_bus", {})
    return RetryPolicy(
        max_attempts=eb_cfg.get("max_attempts", 3),
        base_delay=eb_cfg.get("base_delay", 0.5),
        max_delay=eb_cfg.get("max_delay", 30.0),
        timeout=eb_cfg.get("handler_timeout", 30.0),
    )


def _build_cache_backend(settings: dict) -> CacheBackend:
    cache_cfg = settings.get("cache", {})
    if cache_cfg.get("backend", "memory") == "redis":
        return RedisCacheBackend(
            redis_url=cache_cfg.get("redis_url", "redis://localhost:6379/0"),
            namespace=cache_cfg.get("namespace", ""),
        )
    return MemoryCacheBackend()


def build_backbone(
    settings: dict[str, Any],
    project_root: Path = _PROJECT_ROOT,
    cache_backend: CacheBackend | None = None,
    registry: EventRegistry | None = None,
    sleep: Sleep = asyncio.sleep,
) -> Backbone:
    """Wire all components. Nothing is opened until Backbone.start()."""
    policy = _build_retry_policy(settings)
    metrics = MetricsContext()
    registry = registry or build_default_registry()
    subscriptions = Subscriptions()

    dl_cfg = settings.get("dead_letter", {})
    db_path = Path(dl_cfg.get("db_path", "data/dead_letter.db"))
    if not db_path.is_absolute():
        db_path = project_root / db_path
    dead_letters = DeadLetterQueueService(
        DeadLetterStore(db_path, busy_timeout=dl_cfg.get("busy_timeout", 5000)),
        subscriptions,
        handler_timeout=policy.timeout,
        max_retry_count=dl_cfg.get("max_retry_count", 10),
    )

    bus = EventBus(
        registry,
        subscriptions,
        metrics.events,
        dead_letters=dead_letters,
        retry_policy=policy,
        sleep=sleep,
        record_history=get_setting(settings, "event_bus.record_history", False),
        history_limit=get_setting(settings, "event_bus.history_limit", 1000),
    )

    backend = cache_backend or _build_cache_backend(settings)
    cache_manager = CacheInvalidationManager(backend, metrics.cache)
    if get_setting(settings, "cache.register_defaults", True):
        register_default_dependencies(cache_manager)
    cache_handlers = CacheInvalidationHandlers(cache_manager)
    cache_handlers.register(bus)

    return Backbone(
        settings=settings,
        metrics=metrics,
        registry=registry,
        subscriptions=subscriptions,
        dead_letters=dead_letters,
        bus=bus,
        cache_backend=backend,
        cache_manager=cache_manager,
        cache_handlers=cache_handlers,
        admin=AdminService(dead_letters, cache_manager),
    )


async def report_async() -> dict[str, Any]:
    """Open the DLQ configured in settings and summarize it by status."""
    settings = load_settings()
    setup_logging(_PROJECT_ROOT, settings)
    backbone = build_backbone(settings)
    await backbone.start()
    try:
        counts = {
            status.value: await backbone.dead_letters.count(DeadLetterFilter(status=status))
            for status in DeadLetterStatus
        }
        page = await backbone.admin.list_dead_letters(status="pending", limit=20)
        return {"counts": counts, "pending": page.entries}
    finally:
        await backbone.stop()


def main() -> None:
    """Print a dead-letter summary for operators."""
    load_dotenv(_PROJECT_ROOT / ".env")
    try:
        report = asyncio.run(report_async())
    except KeyboardInterrupt:
        return
    print(json.dumps(report, indent=2, ensure_ascii=False, default=str))


__all__ = ["Backbone", "build_backbone", "main"]
