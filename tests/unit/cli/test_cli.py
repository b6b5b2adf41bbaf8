"""Tests for the maintenance CLI."""

from pathlib import Path

import pytest
from typer.testing import CliRunner

from src.cli import app
from src.cli import db_commands
from src.users.core.errors import NotFound
from src.users.core.services.database.db_session import DbSessionService
from src.users.entities.identity import Identity, IdentityRepository
from src.users.entities.user import User, UserRepository
from src.users.runtime.config.config_data import ConfigData, DatabaseConfig, IdentityConfig
from src.users.runtime.context import with_context

runner = CliRunner()


@pytest.fixture
def db_config(tmp_path: Path) -> DatabaseConfig:
    # File-backed so data survives the dispose() each command performs
    return DatabaseConfig(url=f"sqlite:///{tmp_path / 'users.db'}")


@pytest.fixture
def cli_db(db_config: DatabaseConfig, monkeypatch: pytest.MonkeyPatch):
    """Point the CLI at a throwaway database and hand back a separate handle."""
    monkeypatch.setattr(
        db_commands, "get_db_service", lambda: DbSessionService(db_config, "test")
    )
    service = DbSessionService(db_config, "test")
    service.create_all()
    try:
        yield service
    finally:
        service.dispose()


def test_init_db(db_config: DatabaseConfig, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(
        db_commands, "get_db_service", lambda: DbSessionService(db_config, "test")
    )

    result = runner.invoke(app, ["init-db"])

    assert result.exit_code == 0, result.output
    service = DbSessionService(db_config, "test")
    try:
        with pytest.raises(NotFound):
            UserRepository(service).find_by_email("nobody@example.com")
        assert service.health_check() is True
    finally:
        service.dispose()


class TestBackfill:
    @pytest.fixture
    def seeded(self, cli_db: DbSessionService) -> dict[str, User]:
        users = UserRepository(cli_db)
        identities = IdentityRepository(cli_db)
        google_user = users.insert(User(email="g@example.com"))
        github_user = users.insert(User(email="gh@example.com"))
        identities.insert(
            Identity(provider="google", provider_user_id="g-1", user_id=google_user.id)
        )
        identities.insert(
            Identity(provider="github", provider_user_id="gh-1", user_id=github_user.id)
        )
        return {"google": google_user, "github": github_user}

    def test_backfill_with_explicit_provider(
        self, cli_db: DbSessionService, seeded: dict[str, User]
    ):
        result = runner.invoke(app, ["backfill-email-verified", "-p", "GitHub", "--yes"])

        assert result.exit_code == 0, result.output
        assert "Marked 1 user(s)" in result.output
        users = UserRepository(cli_db)
        assert users.find_by_id(seeded["github"].id).email_verified is True
        assert users.find_by_id(seeded["google"].id).email_verified is False

    def test_backfill_uses_configured_providers(
        self, cli_db: DbSessionService, seeded: dict[str, User]
    ):
        override = ConfigData(identity=IdentityConfig(trusted_providers=["google"]))

        with with_context(override):
            result = runner.invoke(app, ["backfill-email-verified", "--yes"])

        assert result.exit_code == 0, result.output
        assert "google" in result.output
        users = UserRepository(cli_db)
        assert users.find_by_id(seeded["google"].id).email_verified is True
        assert users.find_by_id(seeded["github"].id).email_verified is False

    def test_backfill_aborts_without_confirmation(
        self, cli_db: DbSessionService, seeded: dict[str, User]
    ):
        result = runner.invoke(app, ["backfill-email-verified", "-p", "google"], input="n\n")

        assert result.exit_code == 1
        assert "Aborted" in result.output
        assert UserRepository(cli_db).find_by_id(seeded["google"].id).email_verified is False


class TestGrantSuperuser:
    def test_promotes_user(self, cli_db: DbSessionService):
        user = UserRepository(cli_db).insert(User(email="admin@example.com"))

        result = runner.invoke(app, ["grant-superuser", "Admin@Example.com"])

        assert result.exit_code == 0, result.output
        assert UserRepository(cli_db).find_by_id(user.id).role == "superuser"

    def test_already_superuser(self, cli_db: DbSessionService):
        UserRepository(cli_db).insert(User(email="admin@example.com", role="superuser"))

        result = runner.invoke(app, ["grant-superuser", "admin@example.com"])

        assert result.exit_code == 0
        assert "already a superuser" in result.output

    def test_unknown_email(self, cli_db: DbSessionService):
        result = runner.invoke(app, ["grant-superuser", "ghost@example.com"])

        assert result.exit_code == 1
        assert "No user with email" in result.output
