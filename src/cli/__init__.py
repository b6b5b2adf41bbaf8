"""Main CLI application module."""

import typer

from .db_commands import backfill_email_verified, grant_superuser, init_db

# Create the main CLI application
app = typer.Typer(
    help="Users service maintenance tool",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.command("init-db")(init_db)
app.command("backfill-email-verified")(backfill_email_verified)
app.command("grant-superuser")(grant_superuser)


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
