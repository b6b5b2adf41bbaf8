"""Token endpoints: password login, provider login, renewal and verification."""

from fastapi import APIRouter, Depends

from src.users.api.http.deps import (
    get_authentication_service,
    get_bearer_token,
    get_reconciliation_service,
)
from src.users.api.http.models import (
    ClaimsResponse,
    EmailLoginRequest,
    ProviderLoginRequest,
    TokenResponse,
    TokenVerifyRequest,
)
from src.users.core.services.auth.authentication import AuthenticationService
from src.users.core.services.identity.reconciliation import (
    IdentityReconciliationService,
)

router = APIRouter(prefix="/jwt", tags=["auth"])


@router.post("/email", response_model=TokenResponse)
async def login_with_email(
    body: EmailLoginRequest,
    auth: AuthenticationService = Depends(get_authentication_service),
) -> TokenResponse:
    """Exchange email and password for a bearer token."""
    result = await auth.login(body.email, body.password)
    return TokenResponse(token=result.token, user_id=result.user.id, status=result.status)


@router.post("/verify", response_model=ClaimsResponse)
async def verify_token(
    body: TokenVerifyRequest,
    auth: AuthenticationService = Depends(get_authentication_service),
) -> ClaimsResponse:
    """Validate a token and return its claims."""
    claims = auth.verify_token(body.token)
    return ClaimsResponse(
        user_id=claims.user_id,
        issuer=claims.issuer,
        issued_at=claims.issued_at,
        expires_at=claims.expires_at,
        roles=claims.roles,
    )


@router.post("/renew", response_model=TokenResponse)
async def renew_token(
    token: str = Depends(get_bearer_token),
    auth: AuthenticationService = Depends(get_authentication_service),
) -> TokenResponse:
    """Exchange the request's still-valid Bearer token for a fresh one."""
    result = await auth.renew_token(token)
    return TokenResponse(token=result.token, user_id=result.user.id, status=result.status)


@router.post("/{provider}", response_model=TokenResponse)
async def login_with_provider(
    provider: str,
    body: ProviderLoginRequest,
    reconciliation: IdentityReconciliationService = Depends(get_reconciliation_service),
) -> TokenResponse:
    """Log in with an access token issued by ``provider``.

    The account is looked up at the provider with that token. Creates the user
    on first sight; ``status`` tells the caller which happened.
    """
    result = await reconciliation.login_with_provider(provider, body.token)
    return TokenResponse(token=result.token, user_id=result.user.id, status=result.status)
