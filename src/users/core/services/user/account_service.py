"""Account management: registration, profile, password and linked identities."""

from typing import Any

from loguru import logger
from pydantic import EmailStr, TypeAdapter, ValidationError

from src.users.core.errors import (
    AuthenticationFailed,
    Conflict,
    NotFound,
    ValidationFailed,
)
from src.users.core.security.passwords import PasswordCheck, PasswordHasher
from src.users.core.services.cache.cached_repositories import (
    CachedIdentityRepository,
    CachedUserRepository,
)
from src.users.core.services.worker_pool import BlockingExecutor
from src.users.entities.identity import Identity
from src.users.entities.user import User, normalize_email

MIN_PASSWORD_LENGTH = 8
PROFILE_FIELDS = frozenset({"email", "first_name", "last_name", "phone"})

_email_adapter = TypeAdapter(EmailStr)


def validate_email_address(email: str) -> str:
    """Return the normalized address or raise ``ValidationFailed``."""
    try:
        return normalize_email(_email_adapter.validate_python((email or "").strip()))
    except ValidationError as e:
        raise ValidationFailed(f"Invalid email address: {email!r}") from e


def validate_password(password: str) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )
    return password


class UserAccountService:
    def __init__(
        self,
        users: CachedUserRepository,
        identities: CachedIdentityRepository,
        hasher: PasswordHasher,
        executor: BlockingExecutor,
    ):
        self._users = users
        self._identities = identities
        self._hasher = hasher
        self._executor = executor

    async def register(
        self,
        email: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> User:
        """Create a password account; a taken email raises ``Conflict``."""
        email = validate_email_address(email)
        validate_password(password)

        digest = await self._executor.run(self._hasher.hash, password)
        user = await self._users.insert(
            User(
                email=email,
                password_hash=digest,
                first_name=first_name,
                last_name=last_name,
            )
        )
        logger.bind(event="user.registered").info(
            "User registered", extra={"user_id": user.id}
        )
        return user

    async def get_user(self, user_id: str) -> User:
        return await self._users.find_by_id(user_id)

    async def get_user_by_email(self, email: str) -> User:
        return await self._users.find_by_email(email)

    async def update_profile(self, user_id: str, changes: dict[str, Any]) -> User:
        """Apply profile ``changes``; a new email clears ``email_verified``."""
        unknown = set(changes) - PROFILE_FIELDS
        if unknown:
            raise ValidationFailed(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        user = await self._users.find_by_id(user_id)
        update = dict(changes)
        if "email" in update:
            update["email"] = validate_email_address(update["email"])
            if update["email"] != user.email:
                update["email_verified"] = False

        return await self._users.update(user_id, update)

    async def change_password(
        self, user_id: str, current_password: str | None, new_password: str
    ) -> User:
        """Replace the password.

        Accounts created through an external provider have no password yet and
        may set one without ``current_password``.
        """
        validate_password(new_password)
        user = await self._users.find_by_id(user_id)

        if user.has_password:
            outcome = await self._executor.run(
                self._hasher.check, current_password or "", user.password_hash
            )
            if outcome is PasswordCheck.MALFORMED:
                logger.bind(event="auth.corrupt_credential").error(
                    "Stored password digest is unreadable", extra={"user_id": user.id}
                )
            if outcome is not PasswordCheck.MATCH:
                logger.bind(event="auth.failed").info(
                    "Password change rejected", extra={"user_id": user.id}
                )
                raise AuthenticationFailed()

        digest = await self._executor.run(self._hasher.hash, new_password)
        updated = await self._users.update(
            user.id, {"password_hash": digest}, expect={"password_hash": user.password_hash}
        )
        if updated.password_hash != digest:
            raise Conflict("Password was changed concurrently")
        logger.bind(event="user.password_changed").info(
            "Password changed", extra={"user_id": user.id}
        )
        return updated

    async def list_identities(self, user_id: str) -> list[Identity]:
        await self._users.find_by_id(user_id)
        return await self._identities.list_by_user(user_id)

    async def unlink_identity(self, user_id: str, provider: str) -> None:
        """Remove the user's identities for ``provider``.

        Raises:
            NotFound: the user has no identity for this provider
            ValidationFailed: it is the last way a password-less user can log in
        """
        provider = (provider or "").strip().lower()
        user = await self._users.find_by_id(user_id)
        identities = await self._identities.list_by_user(user_id)

        matching = [i for i in identities if i.provider == provider]
        if not matching:
            raise NotFound(f"No {provider} identity linked to user {user_id}")
        if not user.has_password and len(matching) == len(identities):
            raise ValidationFailed(
                "Cannot unlink the last login method; set a password first"
            )

        for identity in matching:
            await self._identities.delete(identity.id)
        logger.bind(event="identity.unlinked").info(
            "Identity unlinked", extra={"user_id": user_id, "provider": provider}
        )
