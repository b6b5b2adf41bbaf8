"""Resolve externally authenticated logins to exactly one local user."""

from collections.abc import Iterable
from typing import Literal

from loguru import logger

from src.users.core.errors import Conflict, NotFound, ValidationFailed
from src.users.core.models.token import AuthResult
from src.users.core.services.cache.cached_repositories import (
    CachedIdentityRepository,
    CachedUserRepository,
)
from src.users.core.services.identity.provider_client import ProviderClient
from src.users.core.services.jwt.token_service import TokenService
from src.users.entities.identity import Identity
from src.users.entities.user import User, normalize_email

DEFAULT_TRUSTED_PROVIDERS = ("google", "facebook")


class IdentityReconciliationService:
    """Resolve an externally authenticated login to exactly one local user.

    Lookup order is the provider pair first, then the provider-reported email
    (account merge), then a new password-less user. Concurrent first logins are
    settled by the unique constraints on ``users.email`` and
    ``identities(provider, provider_user_id)``: the losing request re-reads the
    winner's row once instead of failing. A new user and its first identity are
    written in one transaction, so a lost race never leaves a user without an
    identity behind.
    """

    def __init__(
        self,
        users: CachedUserRepository,
        identities: CachedIdentityRepository,
        tokens: TokenService,
        trusted_providers: Iterable[str] = DEFAULT_TRUSTED_PROVIDERS,
        provider_client: ProviderClient | None = None,
    ):
        self._users = users
        self._identities = identities
        self._tokens = tokens
        self._trusted_providers = frozenset(p.strip().lower() for p in trusted_providers)
        self._provider_client = provider_client

    def is_trusted(self, provider: str, provider_verified: bool | None) -> bool:
        """Whether this provider's verified-email assertion is accepted."""
        return bool(provider_verified) and provider in self._trusted_providers

    async def login_with_provider(self, provider: str, access_token: str) -> AuthResult:
        """Log in with an access token issued by an identity provider.

        The account id, email and verified flag come from the provider's own
        profile endpoint, never from the caller.

        Raises:
            NotFound: token login is not configured for this provider
            ProviderRejected: the provider refused the token
            ProviderUnavailable: the provider could not be reached
            ValidationFailed: the provider reported no email address
        """
        if self._provider_client is None:
            raise NotFound("Provider login is not configured")

        profile = await self._provider_client.fetch_profile(provider, access_token)
        return await self.reconcile_external_login(
            profile.provider,
            profile.provider_user_id,
            profile.email or "",
            profile.verified,
        )

    async def reconcile_external_login(
        self,
        provider: str,
        provider_user_id: str,
        provider_email: str,
        provider_verified: bool | None,
    ) -> AuthResult:
        """Find or create the user behind an external identity and issue a token.

        Args:
            provider: Provider name, case-insensitive
            provider_user_id: Account id at the provider
            provider_email: Email the provider reports for the account
            provider_verified: Whether the provider asserts the email is verified

        Returns:
            AuthResult with ``status="new"`` when a user was created

        Raises:
            ValidationFailed: provider, provider user id or email is empty
            Conflict: a concurrent create could not be resolved by one re-read
        """
        provider = (provider or "").strip().lower()
        provider_user_id = (provider_user_id or "").strip()
        email = normalize_email(provider_email or "")
        if not provider:
            raise ValidationFailed("provider is required")
        if not provider_user_id:
            raise ValidationFailed("provider_user_id is required")
        if not email:
            raise ValidationFailed("provider_email is required")

        status: Literal["new", "existing"] = "existing"
        try:
            identity = await self._identities.find_by_provider_pair(
                provider, provider_user_id
            )
        except NotFound:
            user, status = await self._link_or_create(
                provider, provider_user_id, email, provider_verified
            )
        else:
            await self._refresh_identity(identity, email, provider_verified)
            user = await self._users.find_by_id(identity.user_id)

        user = await self._propagate_verification(user, provider, provider_verified)

        token = self._tokens.issue(user.id, {"roles": [user.role]})
        logger.info(
            "External login reconciled",
            extra={"provider": provider, "user_id": user.id, "status": status},
        )
        return AuthResult(token=token, user=user, status=status)

    def _new_identity(
        self,
        provider: str,
        provider_user_id: str,
        email: str,
        provider_verified: bool | None,
        user_id: str,
    ) -> Identity:
        return Identity(
            provider=provider,
            provider_user_id=provider_user_id,
            user_id=user_id,
            provider_email=email,
            provider_verified=provider_verified,
        )

    async def _link_or_create(
        self,
        provider: str,
        provider_user_id: str,
        email: str,
        provider_verified: bool | None,
    ) -> tuple[User, Literal["new", "existing"]]:
        try:
            user = await self._users.find_by_email(email)
        except NotFound:
            pass
        else:
            return await self._link(
                user, provider, provider_user_id, email, provider_verified
            ), "existing"

        new_user = User(
            email=email,
            password_hash=None,
            email_verified=self.is_trusted(provider, provider_verified),
        )
        identity = self._new_identity(
            provider, provider_user_id, email, provider_verified, new_user.id
        )
        try:
            created, _ = await self._users.insert_with_identity(new_user, identity)
        except Conflict as conflict:
            logger.bind(event="reconcile.conflict").info(
                "User or identity created concurrently, re-reading",
                extra={"provider": provider, "stage": "user"},
            )
            return await self._resolve_conflict(
                conflict, provider, provider_user_id, email, provider_verified
            ), "existing"

        logger.bind(event="reconcile.created").info(
            "User created from external identity",
            extra={"provider": provider, "user_id": created.id},
        )
        logger.bind(event="reconcile.linked").info(
            "Identity linked to user",
            extra={"provider": provider, "user_id": created.id, "status": "new"},
        )
        return created, "new"

    async def _link(
        self,
        user: User,
        provider: str,
        provider_user_id: str,
        email: str,
        provider_verified: bool | None,
    ) -> User:
        identity = self._new_identity(
            provider, provider_user_id, email, provider_verified, user.id
        )
        try:
            await self._identities.insert(identity)
        except Conflict:
            logger.bind(event="reconcile.conflict").info(
                "Identity linked concurrently, re-reading",
                extra={"provider": provider, "stage": "identity"},
            )
            existing = await self._identities.find_by_provider_pair(
                provider, provider_user_id
            )
            if existing.user_id != user.id:
                return await self._users.find_by_id(existing.user_id)
            return user

        logger.bind(event="reconcile.linked").info(
            "Identity linked to user",
            extra={"provider": provider, "user_id": user.id, "status": "existing"},
        )
        return user

    async def _resolve_conflict(
        self,
        conflict: Conflict,
        provider: str,
        provider_user_id: str,
        email: str,
        provider_verified: bool | None,
    ) -> User:
        # The winner either linked this very pair or created a user with this email
        try:
            existing = await self._identities.find_by_provider_pair(
                provider, provider_user_id
            )
        except NotFound:
            pass
        else:
            return await self._users.find_by_id(existing.user_id)

        try:
            user = await self._users.find_by_email(email)
        except NotFound:
            raise conflict from None
        return await self._link(user, provider, provider_user_id, email, provider_verified)

    async def _refresh_identity(
        self, identity: Identity, email: str, provider_verified: bool | None
    ) -> None:
        # Keep what the provider last reported; never touches the user row
        if (
            identity.provider_email == email
            and identity.provider_verified == provider_verified
        ):
            return
        await self._identities.update(
            identity.model_copy(
                update={"provider_email": email, "provider_verified": provider_verified}
            )
        )

    async def _propagate_verification(
        self, user: User, provider: str, provider_verified: bool | None
    ) -> User:
        # Only ever flips false -> true
        if user.email_verified or not self.is_trusted(provider, provider_verified):
            return user

        updated = await self._users.mark_email_verified(user.id)
        logger.bind(event="reconcile.verified").info(
            "Email verified by trusted provider",
            extra={"provider": provider, "user_id": user.id},
        )
        return updated
