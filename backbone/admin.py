"""Administrative facade used by the operator UI (one coroutine per endpoint).

GET    /dlq?eventName&status&limit&offset  -> list_dead_letters
POST   /dlq/:id/retry                      -> retry_dead_letter
POST   /dlq/retry-all {filter}             -> retry_all_dead_letters
DELETE /dlq/:id                            -> delete_dead_letter
PUT    /dlq/:id/resolve                    -> resolve_dead_letter
GET    /cache/metrics                      -> cache_metrics
POST   /cache/invalidate                   -> invalidate_cache
POST   /cache/reset-metrics                -> reset_cache_metrics

The HTTP binding lives outside this package; NotFoundError and HandlerUnavailableError
propagate so it can map them to status codes.
"""

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from backbone.cache.manager import CacheInvalidationManager
from backbone.events.dead_letter import DeadLetterQueueService
from backbone.events.models import DeadLetterFilter, RetryAllResult

logger = logging.getLogger(__name__)


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class DeadLetterQuery(_Request):
    event_name: str | None = Field(default=None, alias="eventName")
    status: str | None = None
    from_date: float | None = Field(default=None, alias="fromDate")
    to_date: float | None = Field(default=None, alias="toDate")
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)

    def to_filter(self) -> DeadLetterFilter:
        return DeadLetterFilter(
            event_name=self.event_name,
            status=self.status,
            from_date=self.from_date,
            to_date=self.to_date,
        )


class InvalidateRequest(_Request):
    """Either {entityType, entityId} or {pattern}."""

    entity_type: str | None = Field(default=None, alias="entityType")
    entity_id: str | None = Field(default=None, alias="entityId")
    pattern: str | None = None

    @model_validator(mode="after")
    def _entity_or_pattern(self) -> "InvalidateRequest":
        has_entity = bool(self.entity_type and self.entity_id)
        if has_entity == bool(self.pattern):
            raise ValueError("provide either entityType and entityId, or pattern")
        return self


class DeadLetterPage(BaseModel):
    entries: list[dict[str, Any]] = Field(default_factory=list)
    total: int = 0
    limit: int = 50
    offset: int = 0


class InvalidateResult(BaseModel):
    success: bool
    target: str


class AdminService:
    """Operator workflow over the DLQ and the cache invalidation manager."""

    def __init__(
        self, dead_letters: DeadLetterQueueService, cache_manager: CacheInvalidationManager
    ) -> None:
        self._dead_letters = dead_letters
        self._cache = cache_manager

    async def list_dead_letters(self, **params: Any) -> DeadLetterPage:
        query = DeadLetterQuery.model_validate(params)
        flt = query.to_filter()
        entries = await self._dead_letters.list(flt, limit=query.limit, offset=query.offset)
        return DeadLetterPage(
            entries=[e.to_dict() for e in entries],
            total=await self._dead_letters.count(flt),
            limit=query.limit,
            offset=query.offset,
        )

    async def retry_dead_letter(self, entry_id: str) -> dict[str, Any]:
        entry = await self._dead_letters.retry(entry_id)
        return entry.to_dict()

    async def retry_all_dead_letters(self, filter: dict[str, Any] | None = None) -> RetryAllResult:
        query = DeadLetterQuery.model_validate(filter or {})
        return await self._dead_letters.retry_all(query.to_filter())

    async def delete_dead_letter(self, entry_id: str) -> dict[str, Any]:
        await self._dead_letters.remove(entry_id)
        return {"id": entry_id, "deleted": True}

    async def resolve_dead_letter(self, entry_id: str) -> dict[str, Any]:
        entry = await self._dead_letters.resolve(entry_id)
        return entry.to_dict()

    def cache_metrics(self) -> dict[str, Any]:
        return self._cache.get_metrics()

    async def invalidate_cache(self, body: dict[str, Any]) -> InvalidateResult:
        request = InvalidateRequest.model_validate(body)
        if request.pattern:
            logger.info("Admin cache invalidation by pattern %s", request.pattern)
            ok = await self._cache.invalidate_pattern(request.pattern)
            return InvalidateResult(success=ok, target=request.pattern)
        # the validator guarantees both are set when pattern is not
        entity_type, entity_id = request.entity_type or "", request.entity_id or ""
        logger.info("Admin cache invalidation of %s %s", entity_type, entity_id)
        ok = await self._cache.invalidate(entity_type, entity_id)
        return InvalidateResult(
            success=ok, target=self._cache.canonical_key(entity_type, entity_id)
        )

    def reset_cache_metrics(self) -> dict[str, Any]:
        self._cache.reset_metrics()
        return self._cache.get_metrics()
