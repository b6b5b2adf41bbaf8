from dataclasses import dataclass

import httpx
from loguru import logger

from src.users.core.security.passwords import PasswordHasher
from src.users.core.services.auth.authentication import AuthenticationService
from src.users.core.services.cache.cached_repositories import (
    CacheKeys,
    CachedIdentityRepository,
    CachedUserRepository,
)
from src.users.core.services.database.db_session import DbSessionService
from src.users.core.services.identity.provider_client import ProviderClient
from src.users.core.services.identity.reconciliation import (
    IdentityReconciliationService,
)
from src.users.core.services.jwt.token_service import TokenService
from src.users.core.services.notifications.notifier import Notifier, create_notifier
from src.users.core.services.redis_service import RedisService
from src.users.core.services.user.account_service import UserAccountService
from src.users.core.services.user.account_tokens import AccountTokenService
from src.users.core.services.worker_pool import BlockingExecutor
from src.users.core.storage.cache_storage import CacheStorage, create_cache_storage
from src.users.entities.identity import IdentityRepository
from src.users.entities.user import UserRepository
from src.users.runtime.config.config_data import ConfigData


@dataclass
class ApplicationDependencies:
    database_service: DbSessionService
    redis_service: RedisService
    cache_storage: CacheStorage
    executor: BlockingExecutor
    token_service: TokenService
    users: CachedUserRepository
    identities: CachedIdentityRepository
    authentication_service: AuthenticationService
    reconciliation_service: IdentityReconciliationService
    account_service: UserAccountService
    account_tokens: AccountTokenService
    provider_client: ProviderClient
    notifier: Notifier

    def close(self) -> None:
        """Release pools in reverse order of construction."""
        self.executor.shutdown(wait=True)
        self.redis_service.close()
        self.database_service.dispose()


def build_dependencies(
    config: ConfigData,
    database_service: DbSessionService | None = None,
    redis_service: RedisService | None = None,
    cache_storage: CacheStorage | None = None,
    provider_transport: httpx.AsyncBaseTransport | None = None,
    notifier: Notifier | None = None,
) -> ApplicationDependencies:
    """Wire every service from ``config``.

    ``provider_transport`` replaces the network transport used to reach identity
    providers; ``notifier`` replaces the configured message delivery.

    Raises:
        ValueError: the JWT signing secret is missing
    """
    logger.info("Building application dependencies")
    token_service = TokenService(config.jwt)

    database_service = database_service or DbSessionService(
        config.database, config.app.environment
    )
    redis_service = redis_service or RedisService(config.redis)
    cache_storage = cache_storage or create_cache_storage(
        redis_service.get_client(), max_entries=config.cache.local_max_entries
    )
    executor = BlockingExecutor(config.workers.max_workers)
    keys = CacheKeys(config.cache.key_prefix)
    hasher = PasswordHasher()
    provider_client = ProviderClient(config.identity, transport=provider_transport)
    notifier = notifier or create_notifier(config.notifications)

    users = CachedUserRepository(
        UserRepository(database_service),
        cache_storage,
        executor,
        config.cache.ttl_seconds,
        keys,
    )
    identities = CachedIdentityRepository(
        IdentityRepository(database_service),
        cache_storage,
        executor,
        config.cache.ttl_seconds,
        keys,
    )

    return ApplicationDependencies(
        database_service=database_service,
        redis_service=redis_service,
        cache_storage=cache_storage,
        executor=executor,
        token_service=token_service,
        users=users,
        identities=identities,
        authentication_service=AuthenticationService(
            users, hasher, token_service, executor
        ),
        reconciliation_service=IdentityReconciliationService(
            users,
            identities,
            token_service,
            trusted_providers=config.identity.trusted_providers,
            provider_client=provider_client,
        ),
        account_service=UserAccountService(users, identities, hasher, executor),
        account_tokens=AccountTokenService(
            users,
            token_service,
            hasher,
            executor,
            notifier,
            email_verify_ttl=config.jwt.email_verify_ttl_seconds,
            password_reset_ttl=config.jwt.password_reset_ttl_seconds,
        ),
        provider_client=provider_client,
        notifier=notifier,
    )
