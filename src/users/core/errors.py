"""Error taxonomy shared by the credential and identity core.

Every failure the core can report is a subclass of :class:`UsersError` carrying a
stable ``code`` string. The HTTP layer maps codes to status codes; nothing here is
fatal to the process.
"""

from __future__ import annotations

from typing import Literal


class UsersError(Exception):
    """Base class for all users-service errors."""

    code: str = "users_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or self.__class__.__doc__ or self.code


class NotFound(UsersError):
    """Requested entity does not exist."""

    code = "not_found"


class Conflict(UsersError):
    """A uniqueness constraint was violated."""

    code = "conflict"


class ValidationFailed(UsersError):
    """Input was rejected before reaching the store."""

    code = "validation_failed"


class PermissionDenied(UsersError):
    """Caller is authenticated but may not act on this resource."""

    code = "permission_denied"


class AuthenticationFailed(UsersError):
    """Invalid email or password."""

    code = "authentication_failed"

    def __init__(self) -> None:
        # One message for every cause so callers cannot enumerate accounts.
        super().__init__("Invalid email or password")


class TokenError(UsersError):
    """Bearer token could not be accepted."""

    code = "token_error"


class TokenExpired(TokenError):
    """Token signature is valid but the token has expired."""

    code = "token_expired"


class TokenInvalid(TokenError):
    """Token is malformed or its signature does not verify."""

    code = "token_invalid"

    def __init__(
        self,
        reason: Literal["malformed", "bad_signature"],
        message: str | None = None,
    ) -> None:
        super().__init__(message or f"Invalid token ({reason})")
        self.reason = reason


class ResourceExhausted(UsersError):
    """No pooled connection became available before the checkout timeout."""

    code = "resource_exhausted"


class StoreUnavailable(UsersError):
    """The relational store could not be reached or failed the request."""

    code = "store_unavailable"


class CacheUnavailable(UsersError):
    """The cache store could not be reached."""

    code = "cache_unavailable"


class ProviderRejected(UsersError):
    """The identity provider did not accept the access token."""

    code = "provider_rejected"


class ProviderUnavailable(UsersError):
    """The identity provider could not be reached or answered with an error."""

    code = "provider_unavailable"


class DeliveryFailed(UsersError):
    """A notification could not be handed to the mail provider."""

    code = "delivery_failed"
