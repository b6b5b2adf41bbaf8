"""Email verification endpoints."""

from fastapi import APIRouter, Depends, Response, status

from src.users.api.http.deps import get_account_tokens
from src.users.api.http.models import UserResponse
from src.users.core.services.user.account_tokens import AccountTokenService

router = APIRouter(prefix="/email_verify", tags=["email verification"])


@router.post("/resend/{email}", status_code=status.HTTP_202_ACCEPTED)
async def resend_verification(
    email: str,
    account_tokens: AccountTokenService = Depends(get_account_tokens),
) -> Response:
    """Send a fresh verification token to ``email``."""
    await account_tokens.request_email_verification(email)
    return Response(status_code=status.HTTP_202_ACCEPTED)


@router.post("/apply/{token}", response_model=UserResponse)
async def apply_verification(
    token: str,
    account_tokens: AccountTokenService = Depends(get_account_tokens),
) -> UserResponse:
    user = await account_tokens.apply_email_verification(token)
    return UserResponse.from_user(user)
