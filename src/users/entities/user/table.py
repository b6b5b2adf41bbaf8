"""User database table model."""

from datetime import datetime

from sqlalchemy import Column, String
from sqlmodel import Field

from src.users.entities._base import EntityTable


class UserTable(EntityTable, table=True):
    """Database persistence model for users.

    This represents how the User entity is stored in the database.
    The email column carries the store-level uniqueness constraint that
    concurrent registrations and reconciliations rely on.
    """

    __tablename__ = "users"

    email: str = Field(
        sa_column=Column(String(320), nullable=False, unique=True, index=True)
    )
    password_hash: str | None = Field(default=None, max_length=512)
    email_verified: bool = Field(default=False, nullable=False)
    role: str = Field(default="user", max_length=32, nullable=False)
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    last_login_at: datetime | None = None
