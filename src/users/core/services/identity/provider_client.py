"""Identity provider client for resolving an access token to an account profile.

The profile (account id, email and the verified flag) is always read from the
provider's own userinfo endpoint with the caller's bearer token, so nothing the
caller sends about the account itself is ever trusted.
"""

from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel

from src.users.core.errors import (
    NotFound,
    ProviderRejected,
    ProviderUnavailable,
    ValidationFailed,
)
from src.users.runtime.config.config_data import IdentityConfig, OAuthProviderConfig


class ProviderProfile(BaseModel):
    """Account facts as reported by the identity provider."""

    provider: str
    provider_user_id: str
    email: str | None = None
    verified: bool | None = None


def _as_bool(value: Any) -> bool | None:
    # Some providers send the flag as the string "true"
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


class ProviderClient:
    """Calls provider userinfo endpoints with a caller-supplied access token."""

    def __init__(
        self,
        config: IdentityConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._providers = config.providers
        self._timeout = config.http_timeout
        self._retries = config.http_retries
        self._transport = transport

    def supports(self, provider: str) -> bool:
        return (provider or "").strip().lower() in self._providers

    def _client(self) -> httpx.AsyncClient:
        transport = self._transport or httpx.AsyncHTTPTransport(retries=self._retries)
        return httpx.AsyncClient(timeout=self._timeout, transport=transport)

    async def fetch_profile(self, provider: str, access_token: str) -> ProviderProfile:
        """Resolve ``access_token`` to the provider account it was issued for.

        Args:
            provider: Provider name, case-insensitive
            access_token: OAuth access token issued by that provider

        Returns:
            The profile read from the provider's userinfo endpoint

        Raises:
            NotFound: the provider is not configured
            ValidationFailed: the access token is empty
            ProviderRejected: the provider refused the token
            ProviderUnavailable: the provider could not be reached, failed, or
                returned a profile without an account id
        """
        name = (provider or "").strip().lower()
        settings = self._providers.get(name)
        if settings is None:
            raise NotFound(f"Unknown identity provider {provider!r}")
        access_token = (access_token or "").strip()
        if not access_token:
            raise ValidationFailed("access token is required")

        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        try:
            async with self._client() as client:
                response = await client.get(settings.userinfo_endpoint, headers=headers)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            if 400 <= status_code < 500 and status_code != 429:
                logger.bind(event="provider.rejected").info(
                    "Provider refused access token",
                    extra={"provider": name, "status_code": status_code},
                )
                raise ProviderRejected(
                    f"{name} rejected the access token ({status_code})"
                ) from exc
            logger.bind(event="provider.unavailable").warning(
                "Provider answered with an error",
                extra={"provider": name, "status_code": status_code},
            )
            raise ProviderUnavailable(f"{name} returned {status_code}") from exc
        except httpx.HTTPError as exc:
            logger.bind(event="provider.unavailable").warning(
                "Provider request failed",
                extra={"provider": name, "error_message": str(exc)},
            )
            raise ProviderUnavailable(f"{name} could not be reached") from exc
        except ValueError as exc:
            raise ProviderUnavailable(f"{name} returned an unreadable profile") from exc

        return self._to_profile(name, settings, payload)

    @staticmethod
    def _to_profile(
        name: str, settings: OAuthProviderConfig, payload: Any
    ) -> ProviderProfile:
        if not isinstance(payload, dict):
            raise ProviderUnavailable(f"{name} returned an unreadable profile")

        provider_user_id = str(payload.get(settings.id_field) or "").strip()
        if not provider_user_id:
            raise ProviderUnavailable(f"{name} profile has no {settings.id_field!r}")

        if settings.verified_field is None:
            verified = settings.emails_verified
        else:
            verified = _as_bool(payload.get(settings.verified_field))

        return ProviderProfile(
            provider=name,
            provider_user_id=provider_user_id,
            email=payload.get(settings.email_field) or None,
            verified=verified,
        )
