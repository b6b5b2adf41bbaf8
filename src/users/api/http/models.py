"""Request and response bodies of the HTTP API."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from src.users.entities.identity import Identity
from src.users.entities.user import User


class EmailLoginRequest(BaseModel):
    email: str
    password: str


class ProviderLoginRequest(BaseModel):
    """Access token issued to the user by an identity provider."""

    token: str = Field(description="Provider OAuth access token")


class TokenVerifyRequest(BaseModel):
    token: str


class TokenResponse(BaseModel):
    token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    status: Literal["new", "existing"]


class ClaimsResponse(BaseModel):
    user_id: str
    issuer: str | None
    issued_at: int
    expires_at: int
    roles: list[str]


class RegisterRequest(BaseModel):
    email: str
    password: str
    first_name: str | None = None
    last_name: str | None = None


class ProfileUpdateRequest(BaseModel):
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None


class PasswordChangeRequest(BaseModel):
    current_password: str | None = Field(
        default=None, description="Required unless the account has no password yet"
    )
    new_password: str


class PasswordResetRequest(BaseModel):
    email: str


class PasswordResetApply(BaseModel):
    token: str = Field(description="Token from the password reset message")
    password: str = Field(description="New password")


class UserResponse(BaseModel):
    """Public view of a user; the password digest never leaves the service."""

    id: str
    email: str
    email_verified: bool
    role: str
    first_name: str | None
    last_name: str | None
    phone: str | None
    has_password: bool
    last_login_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            email_verified=user.email_verified,
            role=user.role,
            first_name=user.first_name,
            last_name=user.last_name,
            phone=user.phone,
            has_password=user.has_password,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class IdentityResponse(BaseModel):
    id: str
    provider: str
    provider_user_id: str
    provider_email: str | None
    provider_verified: bool | None
    created_at: datetime

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityResponse":
        return cls.model_validate(identity.model_dump())
