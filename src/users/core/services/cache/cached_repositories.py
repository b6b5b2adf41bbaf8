"""Read-through, invalidate-on-write wrappers over the user and identity repositories.

The cache is a derived projection of the relational store: entries are created on
a miss, deleted after every successful write and otherwise expire with their TTL.
Writes never update entries in place. A cache outage is logged and absorbed, so
the wrappers keep serving from the store.

When an invalidation cannot be delivered the affected keys may still hold
pre-write values. Until those keys are deleted, or one TTL has passed and they
have expired on their own, reads bypass the cache entirely.
"""

import time
from collections.abc import Callable
from typing import Any, TypeVar

from loguru import logger
from pydantic import BaseModel

from src.users.core.errors import CacheUnavailable
from src.users.core.services.worker_pool import BlockingExecutor
from src.users.core.storage.cache_storage import CacheStorage
from src.users.entities.identity import Identity, IdentityRepository
from src.users.entities.user import User, UserRepository, normalize_email

T = TypeVar("T", bound=BaseModel)


class CacheKeys:
    """Builds namespaced cache keys for users and identities."""

    def __init__(self, prefix: str = "users"):
        self._prefix = prefix

    def user_id(self, user_id: str) -> str:
        return f"{self._prefix}:user:id:{user_id}"

    def user_email(self, email: str) -> str:
        return f"{self._prefix}:user:email:{normalize_email(email)}"

    def identity_id(self, identity_id: str) -> str:
        return f"{self._prefix}:identity:id:{identity_id}"

    def identity_provider(self, provider: str, provider_user_id: str) -> str:
        return (
            f"{self._prefix}:identity:provider:"
            f"{provider.strip().lower()}:{provider_user_id}"
        )

    def for_identity(self, identity: Identity) -> tuple[str, str]:
        return (
            self.identity_id(identity.id),
            self.identity_provider(identity.provider, identity.provider_user_id),
        )


class CacheAsideRepository:
    """Shared cache-aside plumbing.

    Every cache and store call is blocking and is dispatched to the worker pool.
    """

    def __init__(
        self,
        cache: CacheStorage,
        executor: BlockingExecutor,
        ttl_seconds: int,
        keys: CacheKeys | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache = cache
        self._executor = executor
        self._ttl = ttl_seconds
        self._keys = keys or CacheKeys()
        self._clock = clock
        self._pending_invalidations: set[str] = set()
        self._bypass_until = 0.0

    @property
    def keys(self) -> CacheKeys:
        return self._keys

    @property
    def bypassing_cache(self) -> bool:
        return bool(self._pending_invalidations)

    @staticmethod
    def _degraded(operation: str, keys: tuple[str, ...], exc: CacheUnavailable) -> None:
        logger.bind(event="cache.degraded").warning(
            "Cache {} failed, continuing without cache",
            operation,
            extra={"keys": list(keys), "error_message": str(exc)},
        )

    async def _flush_pending(self) -> bool:
        """Deliver invalidations that failed earlier; ``True`` once none remain."""
        if not self._pending_invalidations:
            return True
        if self._clock() >= self._bypass_until:
            # Anything written before the failed delete has expired by now
            self._pending_invalidations.clear()
            return True

        keys = tuple(self._pending_invalidations)
        try:
            await self._executor.run(self._cache.delete, *keys)
        except CacheUnavailable as exc:
            self._degraded("delete", keys, exc)
            return False
        self._pending_invalidations.difference_update(keys)
        if not self._pending_invalidations:
            logger.bind(event="cache.recovered").info(
                "Pending cache invalidations delivered", extra={"keys": list(keys)}
            )
        return not self._pending_invalidations

    async def _cache_get(self, key: str, model_class: type[T]) -> T | None:
        if not await self._flush_pending():
            return None
        try:
            return await self._executor.run(self._cache.get, key, model_class)
        except CacheUnavailable as exc:
            self._degraded("get", (key,), exc)
            return None

    async def _cache_set(self, key: str, value: BaseModel) -> None:
        if self._pending_invalidations:
            return
        try:
            await self._executor.run(self._cache.set, key, value, self._ttl)
        except CacheUnavailable as exc:
            self._degraded("set", (key,), exc)

    async def _invalidate(self, *keys: str) -> None:
        unique_keys = tuple(dict.fromkeys(keys))
        try:
            await self._executor.run(self._cache.delete, *unique_keys)
        except CacheUnavailable as exc:
            self._degraded("delete", unique_keys, exc)
            self._pending_invalidations.update(unique_keys)
            self._bypass_until = self._clock() + self._ttl

    async def _read_through(
        self,
        key: str,
        model_class: type[T],
        loader: Callable[..., T],
        *args: Any,
    ) -> T:
        cached = await self._cache_get(key, model_class)
        if cached is not None:
            return cached

        # NotFound propagates before anything is cached
        value = await self._executor.run(loader, *args)
        await self._cache_set(key, value)
        return value


class CachedUserRepository(CacheAsideRepository):
    """Async user repository backed by the cache and the relational store."""

    def __init__(
        self,
        repository: UserRepository,
        cache: CacheStorage,
        executor: BlockingExecutor,
        ttl_seconds: int,
        keys: CacheKeys | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(cache, executor, ttl_seconds, keys, clock)
        self._repository = repository

    async def find_by_id(self, user_id: str) -> User:
        return await self._read_through(
            self._keys.user_id(user_id), User, self._repository.find_by_id, user_id
        )

    async def find_by_email(self, email: str) -> User:
        email = normalize_email(email)
        return await self._read_through(
            self._keys.user_email(email), User, self._repository.find_by_email, email
        )

    async def insert(self, user: User) -> User:
        created = await self._executor.run(self._repository.insert, user)
        await self._invalidate(
            self._keys.user_id(created.id), self._keys.user_email(created.email)
        )
        return created

    async def insert_with_identity(
        self, user: User, identity: Identity
    ) -> tuple[User, Identity]:
        created, linked = await self._executor.run(
            self._repository.insert_with_identity, user, identity
        )
        await self._invalidate(
            self._keys.user_id(created.id),
            self._keys.user_email(created.email),
            *self._keys.for_identity(linked),
        )
        return created, linked

    async def update(
        self,
        user_id: str,
        changes: dict[str, Any],
        expect: dict[str, Any] | None = None,
    ) -> User:
        """Persist ``changes`` and evict the id key and every email key involved.

        On an email change the previous address is read from the store, never
        from the cache.
        """
        previous_email = None
        if "email" in changes:
            previous = await self._executor.run(self._repository.find_by_id, user_id)
            previous_email = previous.email

        updated = await self._executor.run(
            self._repository.update, user_id, changes, expect
        )
        keys = [self._keys.user_id(updated.id), self._keys.user_email(updated.email)]
        if previous_email is not None:
            keys.append(self._keys.user_email(previous_email))
        await self._invalidate(*keys)
        return updated

    async def mark_email_verified(self, user_id: str) -> User:
        updated = await self._executor.run(self._repository.mark_email_verified, user_id)
        await self._invalidate(
            self._keys.user_id(updated.id), self._keys.user_email(updated.email)
        )
        return updated


class CachedIdentityRepository(CacheAsideRepository):
    """Async identity repository backed by the cache and the relational store."""

    def __init__(
        self,
        repository: IdentityRepository,
        cache: CacheStorage,
        executor: BlockingExecutor,
        ttl_seconds: int,
        keys: CacheKeys | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(cache, executor, ttl_seconds, keys, clock)
        self._repository = repository

    async def find_by_id(self, identity_id: str) -> Identity:
        return await self._read_through(
            self._keys.identity_id(identity_id),
            Identity,
            self._repository.find_by_id,
            identity_id,
        )

    async def find_by_provider_pair(
        self, provider: str, provider_user_id: str
    ) -> Identity:
        return await self._read_through(
            self._keys.identity_provider(provider, provider_user_id),
            Identity,
            self._repository.find_by_provider_pair,
            provider,
            provider_user_id,
        )

    async def list_by_user(self, user_id: str) -> list[Identity]:
        return await self._executor.run(self._repository.list_by_user, user_id)

    async def insert(self, identity: Identity) -> Identity:
        created = await self._executor.run(self._repository.insert, identity)
        await self._invalidate(*self._keys.for_identity(created))
        return created

    async def update(self, identity: Identity) -> Identity:
        updated = await self._executor.run(self._repository.update, identity)
        await self._invalidate(*self._keys.for_identity(updated))
        return updated

    async def delete(self, identity_id: str) -> Identity:
        deleted = await self._executor.run(self._repository.delete, identity_id)
        await self._invalidate(*self._keys.for_identity(deleted))
        return deleted
