"""Identity domain entity."""

from pydantic import Field, field_validator

from src.users.entities._base import Entity


class Identity(Entity):
    """Link between an externally authenticated account and a local user.

    A ``(provider, provider_user_id)`` pair resolves to at most one user; a user
    may own identities from several providers.
    """

    provider: str = Field(description="External provider name, e.g. google")
    provider_user_id: str = Field(description="Account id reported by the provider")
    user_id: str = Field(description="Internal user ID this identity belongs to")
    provider_email: str | None = Field(
        default=None, description="Email reported by the provider"
    )
    provider_verified: bool | None = Field(
        default=None, description="Whether the provider asserted the email is verified"
    )

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        return value.strip().lower()
