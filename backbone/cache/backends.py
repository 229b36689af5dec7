"""Cache backend capability interface and two implementations (memory, Redis)."""

import asyncio
import fnmatch
import logging
from typing import Any, Protocol, runtime_checkable

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


@runtime_checkable
class CacheBackend(Protocol):
    """What the invalidation manager needs from a cache. Both calls are idempotent."""

    async def delete(self, key: str) -> None:
        """Remove one exact key. Missing keys are not an error."""

    async def delete_by_pattern(self, pattern: str) -> None:
        """Remove every key matching a glob pattern (`*`, `?`)."""


class MemoryCacheBackend:
    """Dict-backed cache for a single process and for tests."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any | None:
        return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            self._data[key] = value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def delete_by_pattern(self, pattern: str) -> None:
        async with self._lock:
            for key in [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]:
                del self._data[key]

    def keys(self) -> list[str]:
        return sorted(self._data)


class RedisCacheBackend:
    """Redis cache. Pattern deletes walk SCAN MATCH and UNLINK in batches."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        namespace: str = "",
        batch_size: int = 500,
        client: aioredis.Redis | None = None,
    ) -> None:
        self._redis_url = redis_url
        self._namespace = namespace
        self._batch_size = batch_size
        self._client = client

    def _make_key(self, key: str) -> str:
        return f"{self._namespace}:{key}" if self._namespace else key

    def _connect(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(self._redis_url, decode_responses=True)
            logger.info("Cache backend connected to Redis at %s", self._redis_url)
        return self._client

    async def delete(self, key: str) -> None:
        await self._connect().unlink(self._make_key(key))

    async def delete_by_pattern(self, pattern: str) -> None:
        client = self._connect()
        batch: list[str] = []
        deleted = 0
        async for key in client.scan_iter(match=self._make_key(pattern), count=self._batch_size):
            batch.append(key)
            if len(batch) >= self._batch_size:
                deleted += await client.unlink(*batch)
                batch.clear()
        if batch:
            deleted += await client.unlink(*batch)
        logger.debug("Redis: unlinked %d keys matching %s", deleted, pattern)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
