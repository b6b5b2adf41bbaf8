from typing import NoReturn

from loguru import logger

from src.users.core.errors import AuthenticationFailed, NotFound, TokenInvalid
from src.users.core.models.token import AuthResult, TokenClaims
from src.users.core.security.passwords import PasswordCheck, PasswordHasher
from src.users.core.services.cache.cached_repositories import CachedUserRepository
from src.users.core.services.jwt.token_service import TokenService
from src.users.core.services.worker_pool import BlockingExecutor
from src.users.entities._base import utc_now
from src.users.entities.user import User, normalize_email

# Verified against when the account does not exist, so unknown emails cost
# the same hashing time as wrong passwords.
_DUMMY_PASSWORD = "users-service-timing-equalizer"


class AuthenticationService:
    """Direct email/password login and bearer token verification."""

    def __init__(
        self,
        users: CachedUserRepository,
        hasher: PasswordHasher,
        tokens: TokenService,
        executor: BlockingExecutor,
    ):
        self._users = users
        self._hasher = hasher
        self._tokens = tokens
        self._executor = executor
        self._dummy_digest: str | None = None

    async def login(self, email: str, password: str) -> AuthResult:
        """Authenticate with email and password and issue a token.

        Every failure (unknown email, password-less account, wrong password,
        corrupt stored digest) raises the same ``AuthenticationFailed``; the
        cause is only visible in logs.
        """
        email = normalize_email(email or "")
        try:
            user = await self._users.find_by_email(email)
        except NotFound:
            await self._burn_hash_time(password or "")
            self._reject("unknown_email")

        if not user.has_password:
            await self._burn_hash_time(password or "")
            self._reject("no_password", user.id)

        outcome = await self._executor.run(
            self._hasher.check, password or "", user.password_hash
        )
        if outcome is PasswordCheck.MALFORMED:
            logger.bind(event="auth.corrupt_credential").error(
                "Stored password digest is unreadable", extra={"user_id": user.id}
            )
            self._reject("corrupt_credential", user.id)
        if outcome is PasswordCheck.MISMATCH:
            self._reject("wrong_password", user.id)

        user = await self._record_login(user, password)
        token = self._tokens.issue(user.id, {"roles": [user.role]})
        logger.bind(event="auth.login").info("User logged in", extra={"user_id": user.id})
        return AuthResult(token=token, user=user, status="existing")

    def verify_token(self, token: str) -> TokenClaims:
        """Validate a bearer token; see ``TokenService.verify`` for failures."""
        return self._tokens.verify(token)

    async def renew_token(self, token: str) -> AuthResult:
        """Exchange a still-valid bearer token for a fresh one.

        Roles are re-read from the store, so a renewed token reflects the
        account as it is now.

        Raises:
            TokenInvalid: the token does not verify or its user no longer exists
            TokenExpired: the token has already expired
        """
        claims = self._tokens.verify(token)
        try:
            user = await self._users.find_by_id(claims.user_id)
        except NotFound as exc:
            raise TokenInvalid("malformed", "Token subject no longer exists") from exc

        renewed = self._tokens.issue(user.id, {"roles": [user.role]})
        logger.bind(event="auth.renewed").info("Token renewed", extra={"user_id": user.id})
        return AuthResult(token=renewed, user=user, status="existing")

    async def _record_login(self, user: User, password: str) -> User:
        # Column-scoped writes; anything else changed meanwhile is left alone
        updated = await self._users.update(user.id, {"last_login_at": utc_now()})
        if self._hasher.needs_rehash(user.password_hash):
            digest = await self._executor.run(self._hasher.hash, password)
            updated = await self._users.update(
                user.id,
                {"password_hash": digest},
                expect={"password_hash": user.password_hash},
            )
            logger.info("Upgrading password digest parameters", extra={"user_id": user.id})
        return updated

    async def _burn_hash_time(self, password: str) -> None:
        if self._dummy_digest is None:
            self._dummy_digest = await self._executor.run(
                self._hasher.hash, _DUMMY_PASSWORD
            )
        await self._executor.run(self._hasher.check, password, self._dummy_digest)

    @staticmethod
    def _reject(reason: str, user_id: str | None = None) -> NoReturn:
        logger.bind(event="auth.failed").info(
            "Login rejected", extra={"reason": reason, "user_id": user_id}
        )
        raise AuthenticationFailed()
