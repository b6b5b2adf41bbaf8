"""Identity database table model."""

from sqlalchemy import Column, String, UniqueConstraint
from sqlmodel import Field

from src.users.entities._base import EntityTable


class IdentityTable(EntityTable, table=True):
    """Database persistence model for external identities.

    The ``(provider, provider_user_id)`` constraint is what keeps two concurrent
    first logins from linking the same external account twice.
    """

    __tablename__ = "identities"
    __table_args__ = (
        UniqueConstraint(
            "provider", "provider_user_id", name="uq_identities_provider_user"
        ),
    )

    provider: str = Field(sa_column=Column(String(64), nullable=False, index=True))
    provider_user_id: str = Field(sa_column=Column(String(512), nullable=False))
    user_id: str = Field(foreign_key="users.id", index=True)
    provider_email: str | None = Field(default=None, max_length=320)
    provider_verified: bool | None = None
