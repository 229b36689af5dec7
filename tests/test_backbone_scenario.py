"""End-to-end: bootstrap wiring, a failing handler escalating to the DLQ, operator replay."""

from pathlib import Path

import pytest

from backbone.cache import MemoryCacheBackend
from backbone.errors import EventDispatchError, NotFoundError
from backbone.events import DeadLetterStatus, EventEnvelope
from backbone.runner import Backbone, build_backbone
from backbone.settings import get_default_settings


class RecordingCache(MemoryCacheBackend):
    """Memory cache that remembers every delete it was asked to do."""

    def __init__(self) -> None:
        super().__init__()
        self.deleted: list[str] = []
        self.patterns: list[str] = []

    async def delete(self, key: str) -> None:
        self.deleted.append(key)
        await super().delete(key)

    async def delete_by_pattern(self, pattern: str) -> None:
        self.patterns.append(pattern)
        await super().delete_by_pattern(pattern)


class FakeSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FlakyNotifier:
    """Fails until someone fixes it."""

    def __init__(self) -> None:
        self.broken = True
        self.seen: list[EventEnvelope] = []

    async def __call__(self, envelope: EventEnvelope) -> None:
        self.seen.append(envelope)
        if self.broken:
            raise RuntimeError("notification service down")


@pytest.fixture
def cache() -> RecordingCache:
    return RecordingCache()


@pytest.fixture
def sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
async def backbone(tmp_path: Path, cache: RecordingCache, sleep: FakeSleep) -> Backbone:
    settings = get_default_settings()
    settings["dead_letter"]["db_path"] = str(tmp_path / "dlq.db")
    settings["event_bus"]["handler_timeout"] = 1.0
    wired = build_backbone(settings, project_root=tmp_path, cache_backend=cache, sleep=sleep)
    await wired.start()
    yield wired
    await wired.stop()


class TestWiring:
    """build_backbone connects every component."""

    def test_cache_handlers_cover_every_domain_event(self, backbone: Backbone) -> None:
        counts = backbone.bus.get_metrics()["handler_counts"]
        assert len(counts) == 18
        assert all(n == 1 for n in counts.values())

    def test_bus_and_dlq_share_subscriptions(self, backbone: Backbone) -> None:
        backbone.bus.subscribe("UserUpdated", "audit", FlakyNotifier())
        assert backbone.subscriptions.get("UserUpdated", "audit") is not None

    def test_relative_db_path_resolves_against_project_root(self, tmp_path: Path) -> None:
        settings = get_default_settings()
        settings["dead_letter"]["db_path"] = "state/dlq.db"
        wired = build_backbone(settings, project_root=tmp_path, cache_backend=MemoryCacheBackend())
        assert wired.dead_letters._store.db_path == tmp_path / "state" / "dlq.db"

    def test_default_dependencies_registered(self, backbone: Backbone) -> None:
        assert backbone.cache_manager.dependencies("user")


class TestUserUpdatedScenario:
    """Cache handler succeeds, a second handler fails three times and is dead-lettered."""

    @pytest.mark.asyncio
    async def test_failure_escalates_then_operator_replays(
        self, backbone: Backbone, cache: RecordingCache, sleep: FakeSleep
    ) -> None:
        notifier = FlakyNotifier()
        backbone.bus.subscribe("UserUpdated", "notify-user", notifier)
        await cache.set("user:u1", {"name": "Ada"})

        with pytest.raises(EventDispatchError) as exc_info:
            await backbone.bus.publish("UserUpdated", {"userId": "u1"})

        assert [f.handler_id for f in exc_info.value.failures] == ["notify-user"]
        assert cache.deleted == ["user:u1"]
        assert await cache.get("user:u1") is None
        assert len(notifier.seen) == 3
        assert sleep.delays == [0.5, 1.0]

        pending = await backbone.dead_letters.list()
        assert len(pending) == 1
        entry = pending[0]
        assert entry.event_name == "UserUpdated"
        assert entry.handler_id == "notify-user"
        assert entry.retry_count == 3
        assert entry.status is DeadLetterStatus.PENDING
        # stored normalized to field names
        assert entry.event_data == {"user_id": "u1"}
        assert "notification service down" in entry.error_message

        notifier.broken = False
        replayed = await backbone.dead_letters.retry(entry.id)

        assert replayed.status is DeadLetterStatus.RESOLVED
        assert notifier.seen[-1].id == entry.event_id
        # replay targets only the failed handler
        assert cache.deleted == ["user:u1"]
        page = await backbone.admin.list_dead_letters(status="pending")
        assert page.entries == []
        assert page.total == 0

        m = backbone.bus.get_metrics()
        assert m["total_published"] == 1
        assert m["total_failed"] == 1
        assert m["dead_lettered"] == {"UserUpdated": 1}


class TestAdminService:
    """Operator facade over the DLQ and the cache manager."""

    async def _dead_letter_one(self, backbone: Backbone) -> str:
        backbone.bus.subscribe("ChallengeCreated", "broken", FlakyNotifier())
        with pytest.raises(EventDispatchError):
            await backbone.bus.publish("ChallengeCreated", {"challenge_id": "c1"})
        [entry] = await backbone.dead_letters.list()
        return entry.id

    @pytest.mark.asyncio
    async def test_list_with_camel_case_params(self, backbone: Backbone) -> None:
        await self._dead_letter_one(backbone)

        page = await backbone.admin.list_dead_letters(eventName="ChallengeCreated", limit=10)
        assert page.total == 1
        assert page.limit == 10
        assert page.entries[0]["status"] == "pending"

        other = await backbone.admin.list_dead_letters(eventName="UserUpdated")
        assert other.total == 0

    @pytest.mark.asyncio
    async def test_list_rejects_bad_limit(self, backbone: Backbone) -> None:
        with pytest.raises(ValueError):
            await backbone.admin.list_dead_letters(limit=0)

    @pytest.mark.asyncio
    async def test_resolve_and_delete(self, backbone: Backbone) -> None:
        entry_id = await self._dead_letter_one(backbone)

        resolved = await backbone.admin.resolve_dead_letter(entry_id)
        assert resolved["status"] == "resolved"

        assert await backbone.admin.delete_dead_letter(entry_id) == {
            "id": entry_id,
            "deleted": True,
        }
        with pytest.raises(NotFoundError):
            await backbone.admin.retry_dead_letter(entry_id)

    @pytest.mark.asyncio
    async def test_retry_all_with_filter(self, backbone: Backbone) -> None:
        await self._dead_letter_one(backbone)
        backbone.bus.unsubscribe("ChallengeCreated", "broken")
        backbone.bus.subscribe("ChallengeCreated", "broken", FlakyNotifier())

        result = await backbone.admin.retry_all_dead_letters({"eventName": "ChallengeCreated"})

        assert result.attempted == 1
        assert result.failed == 1

    @pytest.mark.asyncio
    async def test_cache_invalidation_and_metrics(
        self, backbone: Backbone, cache: RecordingCache
    ) -> None:
        by_entity = await backbone.admin.invalidate_cache({"entityType": "user", "entityId": "u7"})
        assert by_entity.success is True
        assert by_entity.target == "user:u7"
        assert "user:u7" in cache.deleted

        by_pattern = await backbone.admin.invalidate_cache({"pattern": "challenge:list:*"})
        assert by_pattern.target == "challenge:list:*"
        assert cache.patterns[-1] == "challenge:list:*"

        metrics = backbone.admin.cache_metrics()
        assert metrics["invalidations_by_entity_type"] == {"user": 1}

        reset = backbone.admin.reset_cache_metrics()
        assert reset["invalidations_by_entity_type"] == {}
        assert reset["pattern_invalidations"] == 0

    @pytest.mark.asyncio
    async def test_invalidate_requires_entity_or_pattern(self, backbone: Backbone) -> None:
        with pytest.raises(ValueError):
            await backbone.admin.invalidate_cache({"entityType": "user"})
        with pytest.raises(ValueError):
            await backbone.admin.invalidate_cache(
                {"entityType": "user", "entityId": "u1", "pattern": "user:*"}
            )
