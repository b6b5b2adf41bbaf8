"""User domain entity."""

from datetime import datetime
from typing import Any, Literal

from pydantic import Field, field_validator

from src.users.entities._base import Entity


def normalize_email(email: str) -> str:
    """Case-normalize an email address for storage and lookup."""
    return email.strip().lower()


class User(Entity):
    """User entity representing an account in the system.

    ``password_hash`` is absent for accounts created through an external identity
    provider; when present it was produced by the password hasher.
    """

    email: str = Field(description="Unique, case-normalized email address")
    password_hash: str | None = Field(
        default=None, description="Password digest, absent for identity-only accounts"
    )
    email_verified: bool = Field(default=False, description="Whether the email is verified")
    role: Literal["user", "superuser"] = Field(default="user", description="Account role")
    first_name: str | None = Field(default=None, description="User's first name")
    last_name: str | None = Field(default=None, description="User's last name")
    phone: str | None = Field(default=None, description="User's phone number")
    last_login_at: datetime | None = Field(
        default=None, description="Time of the last successful login"
    )

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return normalize_email(value)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def __eq__(self, other: Any) -> bool:
        """Compare users by business attributes, ignoring timestamps."""
        if not isinstance(other, User):
            return False

        return (
            self.id == other.id
            and self.email == other.email
            and self.password_hash == other.password_hash
            and self.email_verified == other.email_verified
            and self.role == other.role
            and self.first_name == other.first_name
            and self.last_name == other.last_name
            and self.phone == other.phone
        )

    def __hash__(self) -> int:
        """Hash based on business attributes, ignoring timestamps."""
        return hash((
            self.id,
            self.email,
            self.password_hash,
            self.email_verified,
            self.role,
            self.first_name,
            self.last_name,
            self.phone,
        ))
