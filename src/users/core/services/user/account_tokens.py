"""Email verification and password reset through signed single-purpose tokens."""

import hashlib

from loguru import logger

from src.users.core.errors import DeliveryFailed, NotFound, TokenInvalid
from src.users.core.models.token import TokenClaims
from src.users.core.security.passwords import PasswordHasher
from src.users.core.services.cache.cached_repositories import CachedUserRepository
from src.users.core.services.jwt.token_service import TokenService
from src.users.core.services.notifications.notifier import Message, Notifier
from src.users.core.services.user.account_service import validate_password
from src.users.core.services.worker_pool import BlockingExecutor
from src.users.entities.user import User, normalize_email

EMAIL_VERIFY = "email_verify"
PASSWORD_RESET = "password_reset"


def credential_fingerprint(password_hash: str | None) -> str:
    """Short digest of the stored password hash; changes with every new password."""
    return hashlib.sha256((password_hash or "").encode()).hexdigest()[:16]


class AccountTokenService:
    """Issues and redeems email verification and password reset tokens.

    Tokens are stateless JWTs restricted to one purpose. A verification token is
    bound to the address it was sent to and a reset token to the password it
    replaces, so a reset token stops working once it has been applied.
    Requests for unknown addresses succeed silently so callers cannot enumerate
    registered accounts.
    """

    def __init__(
        self,
        users: CachedUserRepository,
        tokens: TokenService,
        hasher: PasswordHasher,
        executor: BlockingExecutor,
        notifier: Notifier,
        email_verify_ttl: int = 86400,
        password_reset_ttl: int = 3600,
    ):
        self._users = users
        self._tokens = tokens
        self._hasher = hasher
        self._executor = executor
        self._notifier = notifier
        self._email_verify_ttl = email_verify_ttl
        self._password_reset_ttl = password_reset_ttl

    async def _find_recipient(self, email: str, event: str) -> User | None:
        try:
            return await self._users.find_by_email(normalize_email(email or ""))
        except NotFound:
            logger.bind(event=event).info(
                "Token requested for unknown email", extra={"reason": "unknown_email"}
            )
            return None

    async def _load_subject(self, claims: TokenClaims) -> User:
        try:
            return await self._users.find_by_id(claims.user_id)
        except NotFound as exc:
            raise TokenInvalid("malformed", "Token subject no longer exists") from exc

    async def request_email_verification(self, email: str) -> None:
        """Send a verification token to ``email`` unless it is unknown or verified.

        Raises:
            DeliveryFailed: the message could not be sent
        """
        user = await self._find_recipient(email, "email_verify.skipped")
        if user is None:
            return
        if user.email_verified:
            logger.bind(event="email_verify.skipped").info(
                "Email already verified",
                extra={"reason": "already_verified", "user_id": user.id},
            )
            return

        token = self._tokens.issue(
            user.id,
            {"email": user.email},
            ttl=self._email_verify_ttl,
            purpose=EMAIL_VERIFY,
        )
        await self._notifier.send(
            Message(
                to=user.email,
                subject="Verify your email address",
                body=f"Use this token to verify your email address:\n\n{token}\n",
            )
        )
        logger.bind(event="email_verify.requested").info(
            "Verification token sent", extra={"user_id": user.id}
        )

    async def apply_email_verification(self, token: str) -> User:
        """Mark the address the token was sent to as verified.

        Raises:
            TokenInvalid: wrong purpose, unknown user, or the account's email has
                changed since the token was issued
            TokenExpired: the token has expired
        """
        claims = self._tokens.verify(token, purpose=EMAIL_VERIFY)
        user = await self._load_subject(claims)
        if normalize_email(str(claims.extra.get("email") or "")) != user.email:
            raise TokenInvalid("malformed", "Token was issued for another email address")
        if user.email_verified:
            return user

        verified = await self._users.mark_email_verified(user.id)
        logger.bind(event="email_verify.applied").info(
            "Email verified", extra={"user_id": user.id}
        )
        return verified

    async def request_password_reset(self, email: str) -> None:
        """Send a password reset token to ``email`` if it belongs to an account.

        Succeeds whether or not the address is registered.
        """
        user = await self._find_recipient(email, "password_reset.skipped")
        if user is None:
            return

        token = self._tokens.issue(
            user.id,
            {"pwd": credential_fingerprint(user.password_hash)},
            ttl=self._password_reset_ttl,
            purpose=PASSWORD_RESET,
        )
        try:
            await self._notifier.send(
                Message(
                    to=user.email,
                    subject="Reset your password",
                    body=f"Use this token to choose a new password:\n\n{token}\n",
                )
            )
        except DeliveryFailed as exc:
            # Same response as for unknown addresses
            logger.bind(event="password_reset.delivery_failed").error(
                "Password reset message not delivered: {}",
                exc.message,
                extra={"user_id": user.id},
            )
            return
        logger.bind(event="password_reset.requested").info(
            "Password reset token sent", extra={"user_id": user.id}
        )

    async def apply_password_reset(self, token: str, new_password: str) -> User:
        """Replace the password of the token's user.

        Raises:
            ValidationFailed: the new password is too short
            TokenInvalid: wrong purpose, unknown user, or the password has changed
                since the token was issued (including by this token)
            TokenExpired: the token has expired
        """
        validate_password(new_password)
        claims = self._tokens.verify(token, purpose=PASSWORD_RESET)
        user = await self._load_subject(claims)
        if claims.extra.get("pwd") != credential_fingerprint(user.password_hash):
            raise TokenInvalid("malformed", "Reset token has already been used")

        digest = await self._executor.run(self._hasher.hash, new_password)
        updated = await self._users.update(
            user.id,
            {"password_hash": digest},
            expect={"password_hash": user.password_hash},
        )
        if updated.password_hash != digest:
            raise TokenInvalid("malformed", "Reset token has already been used")

        logger.bind(event="password_reset.applied").info(
            "Password reset", extra={"user_id": user.id}
        )
        return updated
