"""Token claim and authentication result models."""

from typing import Any, Literal

from pydantic import BaseModel, Field

from src.users.entities.user import User

RESERVED_CLAIMS = frozenset({"iss", "sub", "aud", "exp", "iat", "nbf", "jti"})
PURPOSE_CLAIM = "purpose"


class TokenClaims(BaseModel):
    """Verified contents of a bearer token."""

    user_id: str = Field(description="Subject (sub) claim")
    issued_at: int = Field(description="Issued-at (iat) as a unix timestamp")
    expires_at: int = Field(description="Expiry (exp) as a unix timestamp")
    issuer: str | None = Field(default=None, description="Issuer (iss) claim")
    roles: list[str] = Field(default_factory=list, description="Role claims")
    extra: dict[str, Any] = Field(
        default_factory=dict, description="Non-registered claims carried by the token"
    )

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        roles = payload.get("roles") or []
        if isinstance(roles, str):
            roles = roles.split()
        return cls(
            user_id=str(payload["sub"]),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            issuer=payload.get("iss"),
            roles=list(roles),
            extra={
                k: v
                for k, v in payload.items()
                if k not in RESERVED_CLAIMS and k != "roles"
            },
        )

    @property
    def purpose(self) -> str | None:
        """Action this token is restricted to; None for bearer tokens."""
        return self.extra.get(PURPOSE_CLAIM)


class AuthResult(BaseModel):
    """Token issued for a resolved user, plus how the user was resolved."""

    token: str
    user: User
    status: Literal["new", "existing"] = "existing"
