"""Cache invalidation driven by domain events."""

from backbone.cache.backends import CacheBackend, MemoryCacheBackend, RedisCacheBackend
from backbone.cache.handlers import CacheInvalidationHandlers
from backbone.cache.manager import (
    CacheInvalidationManager,
    CacheKeyPrefixes,
    register_default_dependencies,
)

__all__ = [
    "CacheBackend",
    "CacheInvalidationHandlers",
    "CacheInvalidationManager",
    "CacheKeyPrefixes",
    "MemoryCacheBackend",
    "RedisCacheBackend",
    "register_default_dependencies",
]
