"""User account endpoints."""

from fastapi import APIRouter, Depends, Query, Response, status

from src.users.api.http.deps import (
    get_account_service,
    get_account_tokens,
    get_token_claims,
    require_account_access,
)
from src.users.api.http.models import (
    IdentityResponse,
    PasswordChangeRequest,
    PasswordResetApply,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    UserResponse,
)
from src.users.core.errors import PermissionDenied
from src.users.core.models.token import TokenClaims
from src.users.core.services.user.account_service import UserAccountService
from src.users.core.services.user.account_tokens import AccountTokenService
from src.users.entities.user import normalize_email

router = APIRouter(prefix="/users", tags=["users"])


@router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register(
    body: RegisterRequest,
    accounts: UserAccountService = Depends(get_account_service),
) -> UserResponse:
    """Create a password account."""
    user = await accounts.register(
        body.email, body.password, body.first_name, body.last_name
    )
    return UserResponse.from_user(user)


@router.get("/current", response_model=UserResponse)
async def get_current_user(
    claims: TokenClaims = Depends(get_token_claims),
    accounts: UserAccountService = Depends(get_account_service),
) -> UserResponse:
    """The account the Bearer token was issued for."""
    return UserResponse.from_user(await accounts.get_user(claims.user_id))


@router.get("/by_email", response_model=UserResponse)
async def get_user_by_email(
    email: str = Query(..., description="Email address to look up"),
    claims: TokenClaims = Depends(get_token_claims),
    accounts: UserAccountService = Depends(get_account_service),
) -> UserResponse:
    """Look up an account by email. Non-superusers may only look up their own."""
    if "superuser" in claims.roles:
        return UserResponse.from_user(await accounts.get_user_by_email(email))

    # Never looks up an address other than the caller's own
    user = await accounts.get_user(claims.user_id)
    if user.email != normalize_email(email):
        raise PermissionDenied("Token subject does not own this account")
    return UserResponse.from_user(user)


@router.post("/password_reset/request", status_code=status.HTTP_202_ACCEPTED)
async def request_password_reset(
    body: PasswordResetRequest,
    account_tokens: AccountTokenService = Depends(get_account_tokens),
) -> Response:
    """Send a reset token if the address is registered; always accepted."""
    await account_tokens.request_password_reset(body.email)
    return Response(status_code=status.HTTP_202_ACCEPTED)


@router.post("/password_reset/apply", status_code=status.HTTP_204_NO_CONTENT)
async def apply_password_reset(
    body: PasswordResetApply,
    account_tokens: AccountTokenService = Depends(get_account_tokens),
) -> Response:
    await account_tokens.apply_password_reset(body.token, body.password)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/{user_id}",
    response_model=UserResponse,
    dependencies=[Depends(require_account_access)],
)
async def get_user(
    user_id: str,
    accounts: UserAccountService = Depends(get_account_service),
) -> UserResponse:
    return UserResponse.from_user(await accounts.get_user(user_id))


@router.put(
    "/{user_id}",
    response_model=UserResponse,
    dependencies=[Depends(require_account_access)],
)
async def update_user(
    user_id: str,
    body: ProfileUpdateRequest,
    accounts: UserAccountService = Depends(get_account_service),
) -> UserResponse:
    """Update profile fields; only fields present in the body change."""
    user = await accounts.update_profile(user_id, body.model_dump(exclude_unset=True))
    return UserResponse.from_user(user)


@router.put(
    "/{user_id}/password",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_account_access)],
)
async def change_password(
    user_id: str,
    body: PasswordChangeRequest,
    accounts: UserAccountService = Depends(get_account_service),
) -> Response:
    await accounts.change_password(user_id, body.current_password, body.new_password)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/{user_id}/identities",
    response_model=list[IdentityResponse],
    dependencies=[Depends(require_account_access)],
)
async def list_identities(
    user_id: str,
    accounts: UserAccountService = Depends(get_account_service),
) -> list[IdentityResponse]:
    identities = await accounts.list_identities(user_id)
    return [IdentityResponse.from_identity(i) for i in identities]


@router.delete(
    "/{user_id}/identities/{provider}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_account_access)],
)
async def unlink_identity(
    user_id: str,
    provider: str,
    accounts: UserAccountService = Depends(get_account_service),
) -> Response:
    """Unlink every identity the user has at ``provider``."""
    await accounts.unlink_identity(user_id, provider)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
