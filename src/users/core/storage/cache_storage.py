"""Cache storage interface and implementations.

Provides a unified interface for the entity cache with a Redis backend for
shared deployments and an in-process backend for single-instance use and tests.
Calls are blocking; the cache-aside layer runs them on the worker pool.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import TypeVar

from cachetools import TLRUCache
from loguru import logger
from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError

from src.users.core.errors import CacheUnavailable

T = TypeVar("T", bound=BaseModel)


class CacheStorage(ABC):
    """Abstract interface for cache backends."""

    @abstractmethod
    def set(self, key: str, value: BaseModel, ttl_seconds: int) -> None:
        """Store a value with TTL.

        Args:
            key: Cache key
            value: Entity to cache (Pydantic model)
            ttl_seconds: Time to live in seconds

        Raises:
            CacheUnavailable: the backend could not be reached
        """

    @abstractmethod
    def get(self, key: str, model_class: type[T]) -> T | None:
        """Retrieve a value.

        A payload that no longer validates against ``model_class`` is evicted
        and reported as a miss.

        Args:
            key: Cache key
            model_class: Pydantic model class to deserialize to

        Returns:
            Cached value or None if missing, expired or corrupt

        Raises:
            CacheUnavailable: the backend could not be reached
        """

    @abstractmethod
    def delete(self, *keys: str) -> None:
        """Evict keys; missing keys are ignored.

        Raises:
            CacheUnavailable: the backend could not be reached
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the backend is healthy and available."""


class InMemoryCacheStorage(CacheStorage):
    """Process-local cache with per-entry TTL and LRU eviction."""

    def __init__(self, max_entries: int = 10_000, timer=time.monotonic):
        self._lock = threading.Lock()
        self._data: TLRUCache = TLRUCache(
            maxsize=max_entries,
            ttu=lambda _key, value, now: now + value[1],
            timer=timer,
        )

    def set(self, key: str, value: BaseModel, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (value.model_dump_json(), ttl_seconds)

    def get(self, key: str, model_class: type[T]) -> T | None:
        with self._lock:
            entry = self._data.get(key)
        if entry is None:
            return None

        try:
            return model_class.model_validate_json(entry[0])
        except ValidationError:
            logger.bind(event="cache.corrupt").warning(
                "Evicting unreadable cache entry", extra={"key": key}
            )
            self.delete(key)
            return None

    def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            self._data.expire()
            return len(self._data)

    def is_available(self) -> bool:
        """In-memory storage is always available."""
        return True


class RedisCacheStorage(CacheStorage):
    """Redis-backed cache storing entities as JSON strings."""

    def __init__(self, redis_client):
        self._redis = redis_client
        self._available = True

    def set(self, key: str, value: BaseModel, ttl_seconds: int) -> None:
        try:
            self._redis.set(key, value.model_dump_json(), ex=ttl_seconds)
            self._available = True
        except RedisError as e:
            self._available = False
            raise CacheUnavailable(f"Redis set failed: {e}") from e

    def get(self, key: str, model_class: type[T]) -> T | None:
        try:
            data = self._redis.get(key)
            self._available = True
        except RedisError as e:
            self._available = False
            raise CacheUnavailable(f"Redis get failed: {e}") from e

        if data is None:
            return None
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")

        try:
            return model_class.model_validate_json(data)
        except ValidationError:
            logger.bind(event="cache.corrupt").warning(
                "Evicting unreadable cache entry", extra={"key": key}
            )
            self.delete(key)
            return None

    def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            self._redis.delete(*keys)
            self._available = True
        except RedisError as e:
            self._available = False
            raise CacheUnavailable(f"Redis delete failed: {e}") from e

    def is_available(self) -> bool:
        try:
            self._redis.ping()
            self._available = True
        except RedisError:
            self._available = False
        return self._available


def create_cache_storage(redis_client, max_entries: int = 10_000) -> CacheStorage:
    """Pick the cache backend for this process.

    A configured Redis client is always used, even when it does not answer at
    startup: a process-local cache cannot see invalidations made by other
    instances, so a down Redis degrades to direct store reads instead.
    """
    if redis_client is not None:
        logger.info("Entity cache: Redis")
        return RedisCacheStorage(redis_client)

    logger.warning("Redis not configured, using in-memory entity cache")
    return InMemoryCacheStorage(max_entries=max_entries)
