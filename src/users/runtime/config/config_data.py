"""Pydantic models for parsing the config.yaml configuration file.

This module contains Pydantic models that correspond to the structure of config.yaml.
These models handle validation and type conversion of the YAML configuration data.
Every value here is read once at startup and never reloaded at runtime.
"""

from __future__ import annotations

import os
from typing import Literal

from loguru import logger
from pydantic import BaseModel, Field, computed_field, field_validator


class RedisConfig(BaseModel):
    """Redis configuration model."""

    enabled: bool = Field(default=True, description="Enable Redis service")
    url: str = Field(default="", description="Redis connection URL")
    password: str | None = Field(
        default=None, description="Password for Redis authentication"
    )
    max_connections: int = Field(
        default=20, description="Maximum connections held by the blocking pool"
    )
    pool_timeout: float = Field(
        default=2.0, description="Seconds to wait for a free pooled connection"
    )
    socket_timeout: float = Field(default=1.0, description="Socket read timeout")
    socket_connect_timeout: float = Field(
        default=1.0, description="Socket connect timeout"
    )

    @computed_field
    @property
    def connection_string(self) -> str:
        """Construct the Redis connection string with password if provided."""
        if self.password:
            if "@" in self.url:
                # URL already has auth info
                return self.url
            parts = self.url.split("://", 1)
            if len(parts) == 2:
                scheme, rest = parts
                return f"{scheme}://:{self.password}@{rest}"
        return self.url

    @property
    def sanitized_connection_string(self) -> str:
        """Connection string safe for logs."""
        if "@" not in self.url:
            return self.url
        scheme, rest = self.url.split("://", 1)
        return f"{scheme}://***@{rest.split('@', 1)[1]}"


class CacheConfig(BaseModel):
    """Cache-aside configuration."""

    ttl_seconds: int = Field(
        default=300, gt=0, description="Lifetime of a cached user or identity"
    )
    key_prefix: str = Field(default="users", description="Namespace for cache keys")
    local_max_entries: int = Field(
        default=10_000, description="Capacity of the in-memory fallback cache"
    )


class JWTConfig(BaseModel):
    """Bearer token signing configuration."""

    signing_secret: str | None = Field(
        default=None, description="HMAC secret used to sign and verify tokens"
    )
    algorithm: Literal["HS256", "HS384", "HS512"] = Field(
        default="HS256", description="Signing algorithm"
    )
    issuer: str = Field(default="users-service", description="Issuer (iss) claim")
    token_ttl_seconds: int = Field(
        default=3600, gt=0, description="Default token lifetime in seconds"
    )
    clock_skew: int = Field(
        default=0, ge=0, description="Clock skew tolerance in seconds"
    )
    email_verify_ttl_seconds: int = Field(
        default=86400, gt=0, description="Lifetime of an email verification token"
    )
    password_reset_ttl_seconds: int = Field(
        default=3600, gt=0, description="Lifetime of a password reset token"
    )


class OAuthProviderConfig(BaseModel):
    """Where and how to read the account profile behind a provider access token."""

    userinfo_endpoint: str = Field(description="Profile endpoint called with the bearer token")
    id_field: str = Field(default="sub", description="Profile field holding the account id")
    email_field: str = Field(default="email", description="Profile field holding the email")
    verified_field: str | None = Field(
        default="email_verified",
        description="Profile field asserting the email is verified (None if not reported)",
    )
    emails_verified: bool = Field(
        default=False,
        description="Treat every returned email as verified when verified_field is None",
    )


def _default_oauth_providers() -> dict[str, OAuthProviderConfig]:
    return {
        "google": OAuthProviderConfig(
            userinfo_endpoint="https://openidconnect.googleapis.com/v1/userinfo",
        ),
        "facebook": OAuthProviderConfig(
            userinfo_endpoint="https://graph.facebook.com/me?fields=id,email",
            id_field="id",
            verified_field=None,
            emails_verified=True,
        ),
    }


class IdentityConfig(BaseModel):
    """External identity reconciliation settings."""

    trusted_providers: list[str] = Field(
        default_factory=lambda: ["google", "facebook"],
        description="Providers whose verified-email assertion is trusted",
    )
    providers: dict[str, OAuthProviderConfig] = Field(
        default_factory=_default_oauth_providers,
        description="Providers accepted for token login, keyed by name",
    )
    http_timeout: float = Field(
        default=10.0, gt=0, description="Seconds to wait for a provider profile response"
    )
    http_retries: int = Field(
        default=1, ge=0, description="Connection retries against a provider"
    )

    @field_validator("trusted_providers")
    @classmethod
    def _normalize(cls, value: list[str]) -> list[str]:
        return [provider.strip().lower() for provider in value if provider.strip()]

    @field_validator("providers")
    @classmethod
    def _normalize_names(
        cls, value: dict[str, OAuthProviderConfig]
    ) -> dict[str, OAuthProviderConfig]:
        return {name.strip().lower(): provider for name, provider in value.items()}


class NotificationConfig(BaseModel):
    """Delivery of verification and password reset messages."""

    email_api_url: str | None = Field(
        default=None,
        description="HTTP mail API endpoint; messages are only logged when unset",
    )
    email_api_key: str | None = Field(default=None, description="Mail API bearer key")
    email_from: str = Field(
        default="no-reply@example.com", description="Sender address"
    )
    http_timeout: float = Field(default=10.0, gt=0, description="Mail API timeout")


class WorkerConfig(BaseModel):
    """Blocking-call worker pool configuration."""

    max_workers: int = Field(
        default=8, gt=0, description="Threads available for store, cache and hashing calls"
    )


class LoggingConfig(BaseModel):
    """Logging configuration model."""

    level: str = Field(default="INFO", description="Logging level")
    format: Literal["json", "plain"] = Field(default="json", description="Log format")
    file: str | None = Field(default="logs/app.log", description="Log file path")
    max_size_mb: int = Field(default=10, description="Maximum log file size in MB")
    backup_count: int = Field(
        default=5, description="Number of backup log files to keep"
    )


class DatabaseConfig(BaseModel):
    """Database configuration model."""

    url: str = Field(
        default="sqlite:///./database.db",
        description="Database connection URL",
    )
    pool_size: int = Field(default=20, description="Connection pool size")
    max_overflow: int = Field(default=10, description="Maximum pool overflow")
    pool_timeout: int = Field(default=30, description="Pool checkout timeout in seconds")
    pool_recycle: int = Field(default=1800, description="Pool recycle time in seconds")
    password_env_var: str | None = Field(
        default=None,
        description="Environment variable name containing database password",
    )
    password_file: str | None = Field(
        default=None,
        description="Path to file containing database password",
    )

    @computed_field
    @property
    def password(self) -> str | None:
        """Resolve the database password.

        A password embedded in the URL wins; otherwise the mounted secrets file,
        then the named environment variable.
        """
        if self.is_sqlite:
            return None

        from sqlalchemy.engine import make_url

        url_obj = make_url(self.url)
        if url_obj.password:
            return url_obj.password

        if self.password_file:
            try:
                with open(self.password_file) as f:
                    return f.read().strip()
            except OSError as e:
                raise ValueError("Failed to read database password from file.") from e

        if self.password_env_var:
            password = os.getenv(self.password_env_var)
            if not password:
                raise ValueError(
                    f"Environment variable {self.password_env_var} not set"
                )
            return password

        return None

    @computed_field
    @property
    def connection_string(self) -> str:
        """Construct the database connection string with the resolved password."""
        from sqlalchemy.engine import make_url

        base_url = make_url(self.url)
        if base_url.password or not self.password:
            return self.url

        logger.debug("Injecting resolved database password into connection URL")
        return base_url.set(password=self.password).render_as_string(
            hide_password=False
        )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


class AppConfig(BaseModel):
    """Application configuration model."""

    environment: Literal["development", "production", "test"] = Field(
        default="development", description="Application environment"
    )
    host: str = Field(default="localhost", description="Application host")
    port: int = Field(default=8000, description="Application port")


class ConfigData(BaseModel):
    """Root configuration model that matches the config.yaml structure."""

    app: AppConfig = Field(
        default_factory=AppConfig, description="Application configuration"
    )
    database: DatabaseConfig = Field(
        default_factory=DatabaseConfig, description="Database configuration"
    )
    redis: RedisConfig = Field(
        default_factory=RedisConfig, description="Redis configuration"
    )
    cache: CacheConfig = Field(
        default_factory=CacheConfig, description="Cache-aside configuration"
    )
    jwt: JWTConfig = Field(
        default_factory=JWTConfig, description="Token signing configuration"
    )
    identity: IdentityConfig = Field(
        default_factory=IdentityConfig, description="Identity reconciliation settings"
    )
    notifications: NotificationConfig = Field(
        default_factory=NotificationConfig, description="Message delivery settings"
    )
    workers: WorkerConfig = Field(
        default_factory=WorkerConfig, description="Worker pool configuration"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )
