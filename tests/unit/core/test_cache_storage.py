"""Tests for the entity cache backends."""

from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from src.users.core.errors import CacheUnavailable
from src.users.core.storage.cache_storage import (
    InMemoryCacheStorage,
    RedisCacheStorage,
    create_cache_storage,
)
from src.users.entities.identity import Identity
from src.users.entities.user import User


class FakeTimer:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestInMemoryCacheStorage:
    """Test in-memory cache storage implementation."""

    def setup_method(self):
        self.timer = FakeTimer()
        self.storage = InMemoryCacheStorage(max_entries=10, timer=self.timer)
        self.user = User(email="alice@example.com")

    def test_set_and_get(self):
        self.storage.set("k", self.user, ttl_seconds=60)

        cached = self.storage.get("k", User)

        assert cached == self.user
        assert cached is not self.user

    def test_get_missing_key(self):
        assert self.storage.get("missing", User) is None

    def test_entry_expires_after_ttl(self):
        self.storage.set("k", self.user, ttl_seconds=60)

        self.timer.now = 59
        assert self.storage.get("k", User) is not None

        self.timer.now = 61
        assert self.storage.get("k", User) is None

    def test_each_entry_has_its_own_ttl(self):
        self.storage.set("short", self.user, ttl_seconds=5)
        self.storage.set("long", self.user, ttl_seconds=500)

        self.timer.now = 10

        assert self.storage.get("short", User) is None
        assert self.storage.get("long", User) is not None

    def test_delete_many_ignores_missing(self):
        self.storage.set("a", self.user, 60)
        self.storage.set("b", self.user, 60)

        self.storage.delete("a", "b", "never-set")

        assert len(self.storage) == 0

    def test_corrupt_payload_is_a_miss_and_evicted(self):
        """An entry that no longer matches the model is dropped."""
        self.storage.set("k", self.user, 60)

        assert self.storage.get("k", Identity) is None
        assert self.storage.get("k", User) is None

    def test_lru_eviction_when_full(self):
        for i in range(11):
            self.storage.set(f"k{i}", self.user, 60)

        assert len(self.storage) == 10
        assert self.storage.get("k0", User) is None

    def test_is_available(self):
        assert self.storage.is_available() is True


class TestRedisCacheStorage:
    """Test Redis cache storage with a mocked client."""

    def setup_method(self):
        self.redis = MagicMock()
        self.storage = RedisCacheStorage(self.redis)
        self.user = User(email="alice@example.com")

    def test_set_uses_ttl(self):
        self.storage.set("k", self.user, ttl_seconds=120)

        self.redis.set.assert_called_once_with(
            "k", self.user.model_dump_json(), ex=120
        )

    def test_get_hit(self):
        self.redis.get.return_value = self.user.model_dump_json()

        assert self.storage.get("k", User) == self.user

    def test_get_decodes_bytes(self):
        self.redis.get.return_value = self.user.model_dump_json().encode()

        assert self.storage.get("k", User) == self.user

    def test_get_miss(self):
        self.redis.get.return_value = None

        assert self.storage.get("k", User) is None

    def test_corrupt_payload_is_evicted(self):
        self.redis.get.return_value = '{"not": "a user"}'

        assert self.storage.get("k", User) is None
        self.redis.delete.assert_called_once_with("k")

    def test_delete_many(self):
        self.storage.delete("a", "b")

        self.redis.delete.assert_called_once_with("a", "b")

    def test_delete_nothing_skips_round_trip(self):
        self.storage.delete()

        self.redis.delete.assert_not_called()

    @pytest.mark.parametrize(
        "error", [RedisConnectionError("down"), RedisTimeoutError("slow")]
    )
    def test_failures_raise_cache_unavailable(self, error):
        self.redis.get.side_effect = error
        self.redis.set.side_effect = error
        self.redis.delete.side_effect = error

        with pytest.raises(CacheUnavailable):
            self.storage.get("k", User)
        with pytest.raises(CacheUnavailable):
            self.storage.set("k", self.user, 60)
        with pytest.raises(CacheUnavailable):
            self.storage.delete("k")

    def test_pool_exhaustion_raises_cache_unavailable(self):
        """BlockingConnectionPool reports a checkout timeout as ConnectionError."""
        self.redis.get.side_effect = RedisConnectionError("No connection available.")

        with pytest.raises(CacheUnavailable):
            self.storage.get("k", User)

    def test_is_available_reflects_ping(self):
        self.redis.ping.return_value = True
        assert self.storage.is_available() is True

        self.redis.ping.side_effect = RedisConnectionError("down")
        assert self.storage.is_available() is False


class TestCreateCacheStorage:
    def test_redis_client_selects_redis_backend(self):
        assert isinstance(create_cache_storage(MagicMock()), RedisCacheStorage)

    def test_no_client_selects_in_memory_backend(self):
        assert isinstance(create_cache_storage(None), InMemoryCacheStorage)
