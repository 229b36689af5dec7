"""Cache Invalidation Manager: entity mutations -> cache key and pattern evictions.

Cache freshness is best-effort. Backend errors are counted and logged here and never
reach the write path or event handler that triggered the eviction.
"""

import logging
import string
from typing import Any

from backbone.cache.backends import CacheBackend
from backbone.metrics import InvalidationMetrics

logger = logging.getLogger(__name__)


class CacheKeyPrefixes:
    """Entity type prefixes used as the first segment of every cache key."""

    USER = "user"
    CHALLENGE = "challenge"
    FOCUS_AREA = "focusarea"
    EVALUATION = "evaluation"
    PERSONALITY = "personality"
    RECOMMENDATION = "recommendation"


class CacheInvalidationManager:
    """Deletes the canonical key of an entity plus every pattern registered as dependent on
    its entity type. Pattern templates are str.format templates over entity_type,
    entity_id and whatever related ids the caller supplies."""

    def __init__(
        self,
        backend: CacheBackend,
        metrics: InvalidationMetrics,
        key_template: str = "{entity_type}:{entity_id}",
    ) -> None:
        if backend is None:
            raise ValueError("Cache backend is required for the cache invalidation manager")
        self._backend = backend
        self._metrics = metrics
        self._key_template = key_template
        self._dependencies: dict[str, list[str]] = {}

    def register_dependency(self, entity_type: str, related_pattern_template: str) -> None:
        """Invalidating entity_type will also evict the rendered template.

        Raises ValueError for malformed templates and positional fields; only named
        fields ({entity_id}, {user_id}, ...) can be filled in.
        """
        for _, field_name, _, _ in string.Formatter().parse(related_pattern_template):
            if field_name is None:
                continue
            arg_name = field_name.split(".", 1)[0].split("[", 1)[0]
            if not arg_name or arg_name.isdigit():
                raise ValueError(
                    f"Cache pattern template {related_pattern_template!r} uses a positional field"
                )
        templates = self._dependencies.setdefault(entity_type, [])
        if related_pattern_template not in templates:
            templates.append(related_pattern_template)

    def dependencies(self, entity_type: str) -> list[str]:
        return list(self._dependencies.get(entity_type, []))

    def canonical_key(self, entity_type: str, entity_id: str) -> str:
        return self._key_template.format(entity_type=entity_type, entity_id=entity_id)

    async def invalidate_key(self, key: str) -> bool:
        try:
            await self._backend.delete(key)
        except Exception as e:
            self._metrics.record_failure()
            logger.error("Error invalidating cache key %s: %s", key, e)
            return False
        self._metrics.record_key(key)
        logger.debug("Invalidated cache key: %s", key)
        return True

    async def invalidate_pattern(self, pattern: str) -> bool:
        try:
            await self._backend.delete_by_pattern(pattern)
        except Exception as e:
            self._metrics.record_failure()
            logger.error("Error invalidating cache pattern %s: %s", pattern, e)
            return False
        self._metrics.record_pattern(pattern)
        logger.debug("Invalidated cache keys matching pattern: %s", pattern)
        return True

    def _render(
        self, entity_type: str, entity_id: str, related: dict[str, Any] | None
    ) -> tuple[list[str], bool]:
        """Rendered dependent patterns, and whether any template failed to render."""
        values = {
            k: v for k, v in (related or {}).items() if isinstance(v, (str, int)) and v != ""
        }
        values["entity_type"] = entity_type
        values["entity_id"] = entity_id
        patterns: list[str] = []
        failed = False
        for template in self._dependencies.get(entity_type, []):
            try:
                patterns.append(template.format(**values))
            except KeyError as e:
                logger.debug(
                    "Skipping pattern %s for %s: no value for %s", template, entity_type, e
                )
            except (IndexError, ValueError, AttributeError, TypeError) as e:
                failed = True
                self._metrics.record_failure()
                logger.error(
                    "Error rendering cache pattern %s for %s: %s", template, entity_type, e
                )
        return patterns, failed

    async def invalidate(
        self, entity_type: str, entity_id: str, related: dict[str, Any] | None = None
    ) -> bool:
        """Evict an entity and its dependents. Returns False if any eviction failed."""
        if not entity_type or not entity_id:
            logger.warning(
                "Invalid entity type or id for cache invalidation: %r/%r", entity_type, entity_id
            )
            return False
        ok = await self.invalidate_key(self.canonical_key(entity_type, entity_id))
        patterns, render_failed = self._render(entity_type, entity_id, related)
        ok = ok and not render_failed
        for pattern in patterns:
            ok = await self.invalidate_pattern(pattern) and ok
        self._metrics.record_entity(entity_type, entity_id)
        if ok:
            logger.debug("Invalidated %s entity with id %s", entity_type, entity_id)
        else:
            logger.warning("Partial cache invalidation for %s %s", entity_type, entity_id)
        return ok

    async def invalidate_list_caches(self, entity_type: str) -> bool:
        """Evict list and search caches of an entity type (after bulk changes)."""
        if not entity_type:
            logger.warning("No entity type provided for list cache invalidation")
            return False
        listed = await self.invalidate_pattern(f"{entity_type}:list:*")
        searched = await self.invalidate_pattern(f"{entity_type}:search:*")
        return listed and searched

    async def invalidate_all(self) -> bool:
        """Evict every key. Maintenance only."""
        ok = await self.invalidate_pattern("*")
        logger.warning("Invalidated ALL caches")
        return ok

    def get_metrics(self) -> dict[str, Any]:
        return self._metrics.snapshot()

    def reset_metrics(self) -> None:
        self._metrics.reset()
        logger.info("Cache invalidation metrics reset")


_DEFAULT_DEPENDENCIES: dict[str, list[str]] = {
    CacheKeyPrefixes.USER: [
        "user:*:{entity_id}:*",
        "user:list:*",
        "user:search:*",
        "challenge:byUser:{entity_id}:*",
        "focusarea:byUser:{entity_id}:*",
        "evaluation:byUser:{entity_id}:*",
        "personality:byUser:{entity_id}:*",
        "recommendation:byUser:{entity_id}:*",
    ],
    CacheKeyPrefixes.CHALLENGE: [
        "challenge:*:{entity_id}:*",
        "challenge:list:*",
        "challenge:search:*",
        "challenge:recent:*",
        "evaluation:byChallenge:{entity_id}:*",
        "challenge:byUser:{user_id}:*",
    ],
    CacheKeyPrefixes.FOCUS_AREA: [
        "focusarea:*:{entity_id}:*",
        "focusarea:list:*",
        "challenge:byFocusArea:{entity_id}:*",
        "focusarea:byUser:{user_id}:*",
    ],
    CacheKeyPrefixes.EVALUATION: [
        "evaluation:*:{entity_id}:*",
        "evaluation:list:*",
        "evaluation:byUser:{user_id}:*",
        "evaluation:byChallenge:{challenge_id}:*",
        # parent challenge (e.g. its score summary) changes when an evaluation completes
        "challenge:{challenge_id}",
    ],
    CacheKeyPrefixes.PERSONALITY: [
        "personality:*:{entity_id}:*",
        "personality:byUser:{user_id}:*",
        "recommendation:byUser:{user_id}:*",
    ],
    CacheKeyPrefixes.RECOMMENDATION: [
        "recommendation:*:{entity_id}:*",
        "recommendation:byUser:{user_id}:*",
    ],
}


def register_default_dependencies(manager: CacheInvalidationManager) -> CacheInvalidationManager:
    """Install the cross-domain dependency map for the built-in entity types."""
    for entity_type, templates in _DEFAULT_DEPENDENCIES.items():
        for template in templates:
            manager.register_dependency(entity_type, template)
    return manager
