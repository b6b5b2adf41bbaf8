"""Entity cache backends."""

from .cache_storage import (
    CacheStorage,
    InMemoryCacheStorage,
    RedisCacheStorage,
    create_cache_storage,
)

__all__ = [
    "CacheStorage",
    "InMemoryCacheStorage",
    "RedisCacheStorage",
    "create_cache_storage",
]
