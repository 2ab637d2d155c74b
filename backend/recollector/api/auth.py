"""Authentication API endpoints.

Every authentication failure answers ``401 {"detail": "Unauthorized"}``:
callers cannot tell an expired token from a revoked, forged or unknown one.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from recollector.core import get_db
from recollector.middleware.auth_gate import (
    AuthenticatedIdentity,
    extract_bearer_token,
    require_identity,
)
from recollector.models.user import User
from recollector.schemas.auth import (
    ChangePasswordRequest,
    DeleteAccountRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
)
from recollector.services.auth import (
    AccountValidationError,
    AuthenticationFailedError,
    AuthService,
    EmailAlreadyRegisteredError,
    InvalidResetTokenError,
    ResetThrottledError,
)
from recollector.services.tokens import TokenPair

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _bad_request(error: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse.model_validate(pair)


def get_auth_service(request: Request, db: AsyncSession = Depends(get_db)) -> AuthService:
    """Dependency to get auth service."""
    return AuthService(db, issuer=request.app.state.token_issuer)


async def get_current_user(
    identity: AuthenticatedIdentity = Depends(require_identity),
    auth_service: AuthService = Depends(get_auth_service),
) -> User:
    """Load the user behind the request identity."""
    user = await auth_service.get_user_by_id(identity.user_id)
    if user is None:
        raise _unauthorized()
    return user


@router.post(
    "/register",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register(
    request: RegisterRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """Create an account.

    Returns 409 Conflict if the email is already registered.
    """
    try:
        pair = await auth_service.register(
            email=request.email,
            password=request.password,
            password_confirm=request.password_confirm,
        )
    except AccountValidationError as e:
        raise _bad_request(e) from e
    except EmailAlreadyRegisteredError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return _token_response(pair)


@router.post("/login", response_model=TokenResponse)
async def login(
    request: LoginRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """Authenticate and get a JWT token pair."""
    try:
        pair = await auth_service.login(email=request.email, password=request.password)
    except AuthenticationFailedError as e:
        raise _unauthorized() from e
    return _token_response(pair)


@router.post("/refresh-token", response_model=TokenResponse)
async def refresh_token(
    request: RefreshRequest,
    http_request: Request,
    auth_service: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """Mint a new access token.

    The access token in the Authorization header (expired or not) is
    revoked. The refresh token is returned unchanged.
    """
    access_token = extract_bearer_token(http_request.headers.get("Authorization"))
    try:
        pair = await auth_service.refresh(request.refresh_token, access_token=access_token)
    except AuthenticationFailedError as e:
        raise _unauthorized() from e
    return _token_response(pair)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: LogoutRequest,
    identity: AuthenticatedIdentity = Depends(require_identity),
    current_user: User = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Log out, revoking the presented access token and the given refresh token."""
    await auth_service.logout(current_user, identity.access_token, request.refresh_token)
    return MessageResponse(message="Logout successful")


@router.post("/change-password", response_model=MessageResponse)
async def change_password(
    request: ChangePasswordRequest,
    identity: AuthenticatedIdentity = Depends(require_identity),
    current_user: User = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Change the current user's password.

    The presented tokens are revoked; the user must log in again.
    """
    try:
        await auth_service.change_password(
            user=current_user,
            current_password=request.current_password,
            new_password=request.new_password,
            new_password_confirm=request.new_password_confirm,
            access_token=identity.access_token,
            refresh_token=request.refresh_token,
        )
    except AuthenticationFailedError as e:
        raise _unauthorized() from e
    except AccountValidationError as e:
        raise _bad_request(e) from e
    return MessageResponse(message="Password changed successfully")


@router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(
    request: ForgotPasswordRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Request a password reset token.

    The response is the same whether or not the email is registered.
    """
    try:
        await auth_service.forgot_password(request.email)
    except AccountValidationError as e:
        raise _bad_request(e) from e
    except ResetThrottledError as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e)) from e
    return MessageResponse(message="If the account exists, a password reset has been issued")


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    request: ResetPasswordRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Set a new password using a reset token."""
    try:
        await auth_service.reset_password(
            email=request.email,
            reset_token=request.reset_token,
            new_password=request.new_password,
            new_password_confirm=request.new_password_confirm,
        )
    except (AccountValidationError, InvalidResetTokenError) as e:
        raise _bad_request(e) from e
    return MessageResponse(message="Password reset successfully")


@router.post("/delete-account", response_model=MessageResponse)
async def delete_account(
    request: DeleteAccountRequest,
    identity: AuthenticatedIdentity = Depends(require_identity),
    current_user: User = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Delete the current user's account after re-checking the password."""
    email = current_user.email
    try:
        await auth_service.delete_account(
            user=current_user,
            password=request.password,
            password_confirm=request.password_confirm,
            access_token=identity.access_token,
            refresh_token=request.refresh_token,
        )
    except AuthenticationFailedError as e:
        raise _unauthorized() from e
    except AccountValidationError as e:
        raise _bad_request(e) from e
    return MessageResponse(message=f"Successfully deleted account '{email}'")


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Get the current user's info."""
    return UserResponse.model_validate(current_user)
