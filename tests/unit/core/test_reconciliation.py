"""Tests for external identity reconciliation."""

import asyncio
from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import func
from sqlmodel import select

from src.users.core.errors import Conflict, NotFound, ValidationFailed
from src.users.core.services.cache.cached_repositories import (
    CachedIdentityRepository,
    CachedUserRepository,
)
from src.users.core.services.database.db_session import DbSessionService
from src.users.core.services.identity.reconciliation import (
    IdentityReconciliationService,
)
from src.users.core.services.jwt.token_service import TokenService
from src.users.core.services.worker_pool import BlockingExecutor
from src.users.core.storage.cache_storage import InMemoryCacheStorage
from src.users.entities.identity import Identity, IdentityRepository, IdentityTable
from src.users.entities.user import User, UserRepository, UserTable
from src.users.runtime.config.config_data import DatabaseConfig
from tests.fixtures.core import events_named


class TestFirstLogin:
    """A provider pair seen for the first time."""

    async def test_creates_user_and_identity(
        self,
        reconciliation_service: IdentityReconciliationService,
        identity_repository: IdentityRepository,
        log_events,
    ):
        result = await reconciliation_service.reconcile_external_login(
            "google", "g-100", "Alice@Example.com", True
        )

        assert result.status == "new"
        assert result.user.email == "alice@example.com"
        assert result.user.password_hash is None
        identities = identity_repository.list_by_user(result.user.id)
        assert [(i.provider, i.provider_user_id) for i in identities] == [
            ("google", "g-100")
        ]
        assert events_named(log_events, "reconcile.created")
        assert events_named(log_events, "reconcile.linked")

    async def test_token_identifies_user(
        self,
        reconciliation_service: IdentityReconciliationService,
        token_service: TokenService,
    ):
        result = await reconciliation_service.reconcile_external_login(
            "facebook", "f-1", "bob@example.com", False
        )

        claims = token_service.verify(result.token)
        assert claims.user_id == result.user.id
        assert claims.roles == ["user"]

    async def test_second_login_resolves_same_user(
        self,
        reconciliation_service: IdentityReconciliationService,
        identity_repository: IdentityRepository,
    ):
        first = await reconciliation_service.reconcile_external_login(
            "google", "g-100", "alice@example.com", True
        )
        second = await reconciliation_service.reconcile_external_login(
            "Google", "g-100", "alice@example.com", True
        )

        assert second.status == "existing"
        assert second.user.id == first.user.id
        assert len(identity_repository.list_by_user(first.user.id)) == 1

    @pytest.mark.parametrize(
        "provider, provider_user_id, email",
        [
            ("", "g-1", "a@example.com"),
            ("google", "", "a@example.com"),
            ("google", "g-1", ""),
            ("  ", "g-1", "a@example.com"),
        ],
    )
    async def test_empty_inputs_are_rejected(
        self,
        reconciliation_service: IdentityReconciliationService,
        provider: str,
        provider_user_id: str,
        email: str,
    ):
        with pytest.raises(ValidationFailed):
            await reconciliation_service.reconcile_external_login(
                provider, provider_user_id, email, True
            )


class TestAccountMerge:
    """A new provider pair whose email belongs to an existing user."""

    async def test_links_identity_to_existing_user(
        self,
        reconciliation_service: IdentityReconciliationService,
        user_repository: UserRepository,
        identity_repository: IdentityRepository,
    ):
        existing = user_repository.insert(
            User(email="carol@example.com", password_hash="$argon2id$placeholder")
        )

        result = await reconciliation_service.reconcile_external_login(
            "github", "gh-9", "CAROL@example.com", True
        )

        assert result.status == "existing"
        assert result.user.id == existing.id
        assert result.user.password_hash == existing.password_hash
        assert identity_repository.find_by_provider_pair("github", "gh-9").user_id == (
            existing.id
        )

    async def test_two_providers_share_one_user(
        self, reconciliation_service: IdentityReconciliationService
    ):
        via_google = await reconciliation_service.reconcile_external_login(
            "google", "g-1", "dave@example.com", True
        )
        via_facebook = await reconciliation_service.reconcile_external_login(
            "facebook", "f-1", "dave@example.com", True
        )

        assert via_facebook.user.id == via_google.user.id
        assert via_facebook.status == "existing"


class TestEmailVerificationPropagation:
    async def test_trusted_verified_provider_marks_new_user_verified(
        self, reconciliation_service: IdentityReconciliationService
    ):
        result = await reconciliation_service.reconcile_external_login(
            "google", "g-1", "erin@example.com", True
        )

        assert result.user.email_verified is True

    async def test_untrusted_provider_does_not_verify(
        self, reconciliation_service: IdentityReconciliationService
    ):
        result = await reconciliation_service.reconcile_external_login(
            "github", "gh-1", "erin@example.com", True
        )

        assert result.user.email_verified is False

    async def test_unverified_assertion_does_not_verify(
        self, reconciliation_service: IdentityReconciliationService
    ):
        result = await reconciliation_service.reconcile_external_login(
            "google", "g-1", "erin@example.com", False
        )

        assert result.user.email_verified is False

    async def test_existing_unverified_user_becomes_verified(
        self,
        reconciliation_service: IdentityReconciliationService,
        cached_users: CachedUserRepository,
        user_repository: UserRepository,
    ):
        existing = await cached_users.insert(User(email="frank@example.com"))
        await cached_users.find_by_email("frank@example.com")

        result = await reconciliation_service.reconcile_external_login(
            "facebook", "f-7", "frank@example.com", True
        )

        assert result.user.id == existing.id
        assert result.user.email_verified is True
        assert user_repository.find_by_id(existing.id).email_verified is True
        # The cached copy was invalidated by the write
        assert (await cached_users.find_by_email("frank@example.com")).email_verified

    async def test_verification_is_never_revoked(
        self,
        reconciliation_service: IdentityReconciliationService,
        user_repository: UserRepository,
    ):
        first = await reconciliation_service.reconcile_external_login(
            "google", "g-1", "gina@example.com", True
        )
        await reconciliation_service.reconcile_external_login(
            "google", "g-1", "gina@example.com", False
        )

        assert user_repository.find_by_id(first.user.id).email_verified is True

    async def test_trusted_providers_are_configurable(
        self,
        cached_users: CachedUserRepository,
        cached_identities: CachedIdentityRepository,
        token_service: TokenService,
    ):
        service = IdentityReconciliationService(
            cached_users, cached_identities, token_service, trusted_providers=["GitHub"]
        )

        via_github = await service.reconcile_external_login(
            "github", "gh-1", "hank@example.com", True
        )
        via_google = await service.reconcile_external_login(
            "google", "g-1", "ivy@example.com", True
        )

        assert via_github.user.email_verified is True
        assert via_google.user.email_verified is False

    async def test_identity_tracks_latest_provider_assertion(
        self,
        reconciliation_service: IdentityReconciliationService,
        identity_repository: IdentityRepository,
    ):
        await reconciliation_service.reconcile_external_login(
            "github", "gh-1", "jay@example.com", None
        )
        await reconciliation_service.reconcile_external_login(
            "github", "gh-1", "jay@example.com", True
        )

        identity = identity_repository.find_by_provider_pair("github", "gh-1")
        assert identity.provider_verified is True


class TestConcurrentFirstLogin:
    """Races on the unique constraints are settled by one re-read."""

    async def test_user_insert_conflict_rereads_winner(
        self,
        reconciliation_service: IdentityReconciliationService,
        cached_users: CachedUserRepository,
        user_repository: UserRepository,
        identity_repository: IdentityRepository,
        monkeypatch: pytest.MonkeyPatch,
        log_events,
    ):
        winner: dict[str, User] = {}

        async def losing_insert(user: User, identity: Identity):
            # Another request creates the same email between lookup and insert
            winner["user"] = user_repository.insert(User(email=user.email))
            raise Conflict("UNIQUE constraint failed: users.email")

        monkeypatch.setattr(cached_users, "insert_with_identity", losing_insert)

        result = await reconciliation_service.reconcile_external_login(
            "google", "g-1", "kim@example.com", False
        )

        assert result.user.id == winner["user"].id
        assert result.status == "existing"
        assert identity_repository.find_by_provider_pair("google", "g-1").user_id == (
            winner["user"].id
        )
        assert events_named(log_events, "reconcile.conflict")

    async def test_user_insert_conflict_surfaces_when_reread_fails(
        self,
        reconciliation_service: IdentityReconciliationService,
        cached_users: CachedUserRepository,
        monkeypatch: pytest.MonkeyPatch,
    ):
        async def conflicting_insert(user: User, identity: Identity):
            raise Conflict("UNIQUE constraint failed: users.email")

        monkeypatch.setattr(cached_users, "insert_with_identity", conflicting_insert)

        with pytest.raises(Conflict):
            await reconciliation_service.reconcile_external_login(
                "google", "g-1", "kim@example.com", False
            )

    async def test_pair_linked_concurrently_leaves_no_orphan_user(
        self,
        reconciliation_service: IdentityReconciliationService,
        cached_users: CachedUserRepository,
        user_repository: UserRepository,
        identity_repository: IdentityRepository,
        monkeypatch: pytest.MonkeyPatch,
    ):
        attempted: dict[str, User] = {}
        real_insert = user_repository.insert_with_identity

        async def losing_insert(user: User, identity: Identity):
            attempted["user"] = user
            # The same provider account finished its first login elsewhere
            other = user_repository.insert(User(email="first@example.com"))
            identity_repository.insert(
                identity.model_copy(update={"id": "winner-id", "user_id": other.id})
            )
            real_insert(user, identity)

        monkeypatch.setattr(cached_users, "insert_with_identity", losing_insert)

        result = await reconciliation_service.reconcile_external_login(
            "google", "g-2", "second@example.com", True
        )

        assert result.user.email == "first@example.com"
        with pytest.raises(NotFound):
            user_repository.find_by_id(attempted["user"].id)
        with pytest.raises(NotFound):
            user_repository.find_by_email("second@example.com")

    async def test_identity_insert_conflict_rereads_pair(
        self,
        reconciliation_service: IdentityReconciliationService,
        cached_identities: CachedIdentityRepository,
        identity_repository: IdentityRepository,
        user_repository: UserRepository,
        monkeypatch: pytest.MonkeyPatch,
    ):
        existing = user_repository.insert(User(email="lee@example.com"))

        async def losing_insert(identity: Identity) -> Identity:
            identity_repository.insert(identity.model_copy(update={"id": "winner-id"}))
            raise Conflict("UNIQUE constraint failed: identities")

        monkeypatch.setattr(cached_identities, "insert", losing_insert)

        result = await reconciliation_service.reconcile_external_login(
            "google", "g-5", "lee@example.com", True
        )

        assert result.user.id == existing.id
        assert [i.id for i in identity_repository.list_by_user(existing.id)] == [
            "winner-id"
        ]
        # Verification still propagates after the re-read
        assert result.user.email_verified is True

    async def test_identity_owned_by_other_user_wins(
        self,
        reconciliation_service: IdentityReconciliationService,
        cached_identities: CachedIdentityRepository,
        identity_repository: IdentityRepository,
        user_repository: UserRepository,
        monkeypatch: pytest.MonkeyPatch,
    ):
        other = user_repository.insert(User(email="other@example.com"))
        user_repository.insert(User(email="mia@example.com"))

        async def losing_insert(identity: Identity) -> Identity:
            identity_repository.insert(identity.model_copy(update={"user_id": other.id}))
            raise Conflict("UNIQUE constraint failed: identities")

        monkeypatch.setattr(cached_identities, "insert", losing_insert)

        result = await reconciliation_service.reconcile_external_login(
            "github", "gh-3", "mia@example.com", False
        )

        assert result.user.id == other.id


class TestParallelFirstLoginAgainstSQLite:
    """Two service instances sharing one file-backed database."""

    @pytest.fixture
    def shared_db(self, tmp_path: Path) -> Generator[DbSessionService]:
        service = DbSessionService(
            DatabaseConfig(url=f"sqlite:///{tmp_path / 'users.db'}"), "test"
        )
        service.create_all()
        try:
            yield service
        finally:
            service.dispose()

    def _instance(
        self,
        db: DbSessionService,
        executor: BlockingExecutor,
        token_service: TokenService,
    ) -> IdentityReconciliationService:
        cache = InMemoryCacheStorage(max_entries=100)
        return IdentityReconciliationService(
            CachedUserRepository(UserRepository(db), cache, executor, 60),
            CachedIdentityRepository(IdentityRepository(db), cache, executor, 60),
            token_service,
            ["google"],
        )

    async def test_gathered_logins_create_one_user_and_one_identity(
        self,
        shared_db: DbSessionService,
        executor: BlockingExecutor,
        token_service: TokenService,
    ):
        first = self._instance(shared_db, executor, token_service)
        second = self._instance(shared_db, executor, token_service)

        results = await asyncio.gather(
            first.reconcile_external_login("google", "g-race", "race@example.com", True),
            second.reconcile_external_login("google", "g-race", "race@example.com", True),
        )

        assert results[0].user.id == results[1].user.id
        assert sorted(r.status for r in results) == ["existing", "new"]
        users = UserRepository(shared_db)
        owner = users.find_by_email("race@example.com")
        assert owner.id == results[0].user.id
        identities = IdentityRepository(shared_db).list_by_user(owner.id)
        assert [(i.provider, i.provider_user_id) for i in identities] == [
            ("google", "g-race")
        ]
        with shared_db.session_scope() as session:
            assert session.exec(select(func.count()).select_from(UserTable)).one() == 1
            assert session.exec(select(func.count()).select_from(IdentityTable)).one() == 1
