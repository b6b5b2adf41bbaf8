"""Redis connection service for managing Redis client lifecycle and health checks."""

from typing import Any

import redis
from loguru import logger
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError
from redis.retry import Retry

from src.users.runtime.config.config_data import RedisConfig


class RedisService:
    """Owns the pooled Redis client used by the cache tier.

    The client sits on a ``BlockingConnectionPool``: a checkout waits at most
    ``pool_timeout`` seconds for a free connection, then fails with a
    ``ConnectionError`` that the cache layer treats as cache unavailability.
    All calls are blocking and are expected to run on the worker pool.
    """

    def __init__(self, redis_config: RedisConfig):
        logger.info("Setting up Redis service")
        self._enabled = redis_config.enabled
        self._client: redis.Redis | None = None
        self._url = redis_config.url

        if not self._enabled:
            logger.info("Redis is disabled, service will not connect")
            return

        if not self._url:
            logger.warning("Redis URL not configured, service will not connect")
            self._enabled = False
            return

        logger.info(
            "Initializing Redis client with connection string: {}",
            redis_config.sanitized_connection_string,
        )

        pool = redis.BlockingConnectionPool.from_url(
            redis_config.connection_string,
            max_connections=redis_config.max_connections,
            timeout=redis_config.pool_timeout,
            socket_timeout=redis_config.socket_timeout,
            socket_connect_timeout=redis_config.socket_connect_timeout,
            socket_keepalive=True,
            health_check_interval=30,
            decode_responses=True,
            encoding="utf-8",
            encoding_errors="replace",
            client_name="users_cache_client",
        )
        self._client = redis.Redis(
            connection_pool=pool,
            # One quick retry; a slow cache is worse than a cache miss
            retry=Retry(ExponentialBackoff(base=0.05, cap=0.2), retries=1),
        )
        logger.info(
            "Redis client initialized",
            extra={
                "max_connections": redis_config.max_connections,
                "pool_timeout": redis_config.pool_timeout,
            },
        )

    def get_client(self) -> redis.Redis | None:
        """Return the Redis client if enabled, None otherwise."""
        if not self._enabled:
            return None
        return self._client

    def health_check(self) -> bool:
        """Ping Redis; False when disabled or unreachable."""
        if not self._enabled or not self._client:
            return False

        try:
            return bool(self._client.ping())
        except RedisError as e:
            logger.error(
                "Redis health check failed",
                extra={
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
            )
            return False

    def get_info(self) -> dict[str, Any] | None:
        """Get Redis server information for monitoring."""
        if not self._enabled or not self._client:
            return None

        try:
            info = self._client.info()
        except RedisError as e:
            logger.error(
                "Failed to get Redis info",
                extra={"error_type": type(e).__name__, "error_message": str(e)},
            )
            return None
        return {
            "version": info.get("redis_version"),
            "uptime_seconds": info.get("uptime_in_seconds"),
            "connected_clients": info.get("connected_clients"),
            "used_memory_human": info.get("used_memory_human"),
        }

    def close(self) -> None:
        """Close the Redis connection pool."""
        if self._client:
            try:
                logger.info("Closing Redis connection")
                self._client.close()
                self._client.connection_pool.disconnect()
            except RedisError as e:
                logger.error(
                    "Error closing Redis connection",
                    extra={"error_type": type(e).__name__, "error_message": str(e)},
                )
            finally:
                self._client = None

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def url(self) -> str | None:
        return self._url
