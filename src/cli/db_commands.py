"""Database maintenance commands."""

import typer
from rich.console import Console
from rich.prompt import Confirm

from src.users.core.errors import NotFound, UsersError
from src.users.core.services.database.db_session import DbSessionService
from src.users.entities.user import UserRepository
from src.users.runtime.context import get_config

console = Console()


def get_db_service() -> DbSessionService:
    config = get_config()
    return DbSessionService(config.database, config.app.environment)


def init_db() -> None:
    """Create the users and identities tables if they do not exist."""
    db = get_db_service()
    try:
        db.create_all()
    except Exception as e:
        console.print(f"[red]❌ Failed to create tables: {e}[/red]")
        raise typer.Exit(code=1) from e
    finally:
        db.dispose()
    console.print("[green]✅ Database tables are in place[/green]")


def backfill_email_verified(
    provider: list[str] = typer.Option(
        None,
        "--provider",
        "-p",
        help="Trusted provider (repeatable); defaults to identity.trusted_providers",
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Mark users that own an identity from a trusted provider as email-verified.

    One-off migration for accounts linked before verification was propagated at
    login. Cached user entries pick up the change when their TTL expires.
    """
    providers = [p.strip().lower() for p in (provider or get_config().identity.trusted_providers)]
    if not providers:
        console.print("[yellow]No trusted providers configured, nothing to do[/yellow]")
        return

    console.print(f"Trusted providers: [cyan]{', '.join(providers)}[/cyan]")
    if not yes and not Confirm.ask("Mark matching users as email-verified?"):
        console.print("[yellow]Aborted[/yellow]")
        raise typer.Exit(code=1)

    db = get_db_service()
    try:
        changed = UserRepository(db).mark_verified_by_trusted_identities(providers)
    except UsersError as e:
        console.print(f"[red]❌ Backfill failed: {e.message}[/red]")
        raise typer.Exit(code=1) from e
    finally:
        db.dispose()

    console.print(f"[green]✅ Marked {changed} user(s) as email-verified[/green]")


def grant_superuser(
    email: str = typer.Argument(..., help="Email of the account to promote"),
) -> None:
    """Give an existing account the superuser role."""
    db = get_db_service()
    repository = UserRepository(db)
    try:
        user = repository.find_by_email(email)
        if user.role == "superuser":
            console.print(f"[yellow]{user.email} is already a superuser[/yellow]")
            return
        repository.update(user.id, {"role": "superuser"})
    except NotFound as e:
        console.print(f"[red]❌ No user with email '{email}'[/red]")
        raise typer.Exit(code=1) from e
    except UsersError as e:
        console.print(f"[red]❌ Failed to update user: {e.message}[/red]")
        raise typer.Exit(code=1) from e
    finally:
        db.dispose()

    console.print(f"[green]✅ {user.email} is now a superuser[/green]")
