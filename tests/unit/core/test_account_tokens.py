"""Tests for email verification and password reset tokens."""

import pytest

from src.users.core.errors import (
    AuthenticationFailed,
    DeliveryFailed,
    TokenExpired,
    TokenInvalid,
    ValidationFailed,
)
from src.users.core.security.passwords import PasswordHasher
from src.users.core.services.auth.authentication import AuthenticationService
from src.users.core.services.cache.cached_repositories import CachedUserRepository
from src.users.core.services.jwt.token_service import TokenService
from src.users.core.services.notifications.notifier import LogNotifier, Message, Notifier
from src.users.core.services.user.account_tokens import (
    EMAIL_VERIFY,
    PASSWORD_RESET,
    AccountTokenService,
)
from src.users.core.services.worker_pool import BlockingExecutor
from src.users.entities.user import User, UserRepository
from tests.fixtures.core import events_named


def _token_in(message: Message) -> str:
    return message.body.strip().splitlines()[-1]


@pytest.fixture
def user(user_repository: UserRepository, hasher: PasswordHasher) -> User:
    return user_repository.insert(
        User(email="rita@example.com", password_hash=hasher.hash("old-password"))
    )


class TestEmailVerification:
    async def test_request_then_apply(
        self, account_tokens: AccountTokenService, notifier: LogNotifier, user: User
    ):
        await account_tokens.request_email_verification("Rita@Example.com")

        assert [m.to for m in notifier.sent] == ["rita@example.com"]
        verified = await account_tokens.apply_email_verification(
            _token_in(notifier.sent[0])
        )

        assert verified.id == user.id
        assert verified.email_verified is True

    async def test_applying_twice_is_harmless(
        self, account_tokens: AccountTokenService, notifier: LogNotifier, user: User
    ):
        await account_tokens.request_email_verification(user.email)
        token = _token_in(notifier.sent[0])

        await account_tokens.apply_email_verification(token)
        again = await account_tokens.apply_email_verification(token)

        assert again.email_verified is True

    async def test_already_verified_gets_no_message(
        self,
        account_tokens: AccountTokenService,
        cached_users: CachedUserRepository,
        notifier: LogNotifier,
        user: User,
        log_events,
    ):
        await cached_users.mark_email_verified(user.id)

        await account_tokens.request_email_verification(user.email)

        assert notifier.sent == []
        assert events_named(log_events, "email_verify.skipped")

    async def test_unknown_email_is_silent(
        self, account_tokens: AccountTokenService, notifier: LogNotifier, log_events
    ):
        await account_tokens.request_email_verification("nobody@example.com")

        assert notifier.sent == []
        skipped = events_named(log_events, "email_verify.skipped")
        assert skipped[0]["extra"]["reason"] == "unknown_email"

    async def test_token_for_previous_email_is_rejected(
        self,
        account_tokens: AccountTokenService,
        cached_users: CachedUserRepository,
        notifier: LogNotifier,
        user: User,
    ):
        await account_tokens.request_email_verification(user.email)
        await cached_users.update(user.id, {"email": "rita.new@example.com"})

        with pytest.raises(TokenInvalid):
            await account_tokens.apply_email_verification(_token_in(notifier.sent[0]))

        assert (await cached_users.find_by_id(user.id)).email_verified is False

    async def test_expired_token(
        self, account_tokens: AccountTokenService, token_service: TokenService, user: User
    ):
        token = token_service.issue(
            user.id, {"email": user.email}, ttl=-10, purpose=EMAIL_VERIFY
        )

        with pytest.raises(TokenExpired):
            await account_tokens.apply_email_verification(token)

    async def test_other_token_kinds_are_rejected(
        self, account_tokens: AccountTokenService, token_service: TokenService, user: User
    ):
        session = token_service.issue(user.id, {"email": user.email})
        reset = token_service.issue(user.id, {"email": user.email}, purpose=PASSWORD_RESET)

        for token in (session, reset):
            with pytest.raises(TokenInvalid):
                await account_tokens.apply_email_verification(token)

    async def test_deleted_subject(
        self, account_tokens: AccountTokenService, token_service: TokenService
    ):
        token = token_service.issue(
            "gone", {"email": "gone@example.com"}, purpose=EMAIL_VERIFY
        )

        with pytest.raises(TokenInvalid):
            await account_tokens.apply_email_verification(token)


class TestPasswordReset:
    async def test_reset_replaces_password(
        self,
        account_tokens: AccountTokenService,
        authentication_service: AuthenticationService,
        notifier: LogNotifier,
        user: User,
    ):
        await account_tokens.request_password_reset(user.email)

        await account_tokens.apply_password_reset(
            _token_in(notifier.sent[0]), "new-password"
        )

        assert (await authentication_service.login(user.email, "new-password")).user.id == (
            user.id
        )
        with pytest.raises(AuthenticationFailed):
            await authentication_service.login(user.email, "old-password")

    async def test_token_works_once(
        self, account_tokens: AccountTokenService, notifier: LogNotifier, user: User
    ):
        await account_tokens.request_password_reset(user.email)
        token = _token_in(notifier.sent[0])
        await account_tokens.apply_password_reset(token, "new-password")

        with pytest.raises(TokenInvalid):
            await account_tokens.apply_password_reset(token, "third-password")

    async def test_password_change_voids_outstanding_tokens(
        self,
        account_tokens: AccountTokenService,
        cached_users: CachedUserRepository,
        hasher: PasswordHasher,
        notifier: LogNotifier,
        user: User,
    ):
        await account_tokens.request_password_reset(user.email)
        await cached_users.update(user.id, {"password_hash": hasher.hash("changed-pwd")})

        with pytest.raises(TokenInvalid):
            await account_tokens.apply_password_reset(
                _token_in(notifier.sent[0]), "new-password"
            )

    async def test_short_password_is_rejected_before_the_token(
        self, account_tokens: AccountTokenService, notifier: LogNotifier, user: User
    ):
        await account_tokens.request_password_reset(user.email)
        token = _token_in(notifier.sent[0])

        with pytest.raises(ValidationFailed):
            await account_tokens.apply_password_reset(token, "short")
        await account_tokens.apply_password_reset(token, "new-password")

    async def test_verification_token_cannot_reset(
        self,
        account_tokens: AccountTokenService,
        token_service: TokenService,
        user: User,
    ):
        token = token_service.issue(user.id, {"email": user.email}, purpose=EMAIL_VERIFY)

        with pytest.raises(TokenInvalid):
            await account_tokens.apply_password_reset(token, "new-password")

    async def test_unknown_email_is_silent(
        self, account_tokens: AccountTokenService, notifier: LogNotifier, log_events
    ):
        await account_tokens.request_password_reset("nobody@example.com")

        assert notifier.sent == []
        assert events_named(log_events, "password_reset.skipped")

    async def test_delivery_failure_is_logged_not_raised(
        self,
        cached_users: CachedUserRepository,
        token_service: TokenService,
        hasher: PasswordHasher,
        executor: BlockingExecutor,
        user: User,
        log_events,
    ):
        class DownNotifier(Notifier):
            async def send(self, message: Message) -> None:
                raise DeliveryFailed("Mail API returned 503")

        service = AccountTokenService(
            cached_users, token_service, hasher, executor, DownNotifier()
        )

        await service.request_password_reset(user.email)

        failed = events_named(log_events, "password_reset.delivery_failed")
        assert failed[0]["extra"]["user_id"] == user.id
