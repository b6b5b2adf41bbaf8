"""FastAPI dependency implementations."""

from __future__ import annotations

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from src.users.api.http.app_data import ApplicationDependencies
from src.users.core.errors import PermissionDenied, TokenInvalid
from src.users.core.models.token import TokenClaims
from src.users.core.services.auth.authentication import AuthenticationService
from src.users.core.services.identity.reconciliation import (
    IdentityReconciliationService,
)
from src.users.core.services.user.account_service import UserAccountService
from src.users.core.services.user.account_tokens import AccountTokenService

_bearer = HTTPBearer(auto_error=False)


def get_app_dependencies(request: Request) -> ApplicationDependencies:
    return request.app.state.app_dependencies


def get_authentication_service(request: Request) -> AuthenticationService:
    """Get the Authentication service instance."""
    app_deps: ApplicationDependencies = request.app.state.app_dependencies
    return app_deps.authentication_service


def get_reconciliation_service(request: Request) -> IdentityReconciliationService:
    """Get the Identity Reconciliation service instance."""
    app_deps: ApplicationDependencies = request.app.state.app_dependencies
    return app_deps.reconciliation_service


def get_account_service(request: Request) -> UserAccountService:
    """Get the User Account service instance."""
    app_deps: ApplicationDependencies = request.app.state.app_dependencies
    return app_deps.account_service


def get_account_tokens(request: Request) -> AccountTokenService:
    app_deps: ApplicationDependencies = request.app.state.app_dependencies
    return app_deps.account_tokens


def get_bearer_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> str:
    """Raw Bearer token of the request, unverified."""
    if credentials is None or not credentials.credentials:
        raise TokenInvalid("malformed", "Missing Bearer token")
    return credentials.credentials


def get_token_claims(
    token: str = Depends(get_bearer_token),
    auth: AuthenticationService = Depends(get_authentication_service),
) -> TokenClaims:
    """Verify the request's Bearer token."""
    return auth.verify_token(token)


def require_account_access(
    user_id: str, claims: TokenClaims = Depends(get_token_claims)
) -> TokenClaims:
    """Allow the account owner or a superuser to act on ``/users/{user_id}``."""
    if claims.user_id != user_id and "superuser" not in claims.roles:
        raise PermissionDenied("Token subject does not own this account")
    return claims
