"""Pydantic schemas for authentication API."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class RegisterRequest(BaseModel):
    """Request for account registration."""

    email: str = Field(..., max_length=255, description="Account email, used as token subject")
    password: str = Field(..., description="Password (6-16 characters)")
    password_confirm: str = Field(..., description="Must equal password")


class LoginRequest(BaseModel):
    """Request for login."""

    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    """Response with an access/refresh token pair."""

    model_config = ConfigDict(from_attributes=True)

    access_token: str
    refresh_token: str
    access_expires_at: int = Field(description="Access token expiry as epoch seconds")
    refresh_expires_at: int = Field(description="Refresh token expiry as epoch seconds")
    token_type: str = "bearer"


class RefreshRequest(BaseModel):
    """Request for access token refresh.

    The current access token, if any, is read from the Authorization header
    and revoked once the new one is issued.
    """

    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    """Request for logout."""

    refresh_token: str | None = Field(
        None,
        description="Refresh token to revoke alongside the access token.",
    )


class ChangePasswordRequest(BaseModel):
    """Request for password change."""

    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., description="New password (6-16 characters)")
    new_password_confirm: str
    refresh_token: str | None = Field(
        None, description="Refresh token of the current session, revoked on success"
    )


class ForgotPasswordRequest(BaseModel):
    """Request for a password reset token."""

    email: str = Field(..., min_length=1)


class ResetPasswordRequest(BaseModel):
    """Request to set a new password with a reset token."""

    email: str = Field(..., min_length=1)
    reset_token: str = Field(..., min_length=1)
    new_password: str
    new_password_confirm: str


class DeleteAccountRequest(BaseModel):
    """Request for account deletion."""

    password: str = Field(..., min_length=1)
    password_confirm: str = Field(..., min_length=1)
    refresh_token: str | None = None


class MessageResponse(BaseModel):
    message: str


class UserResponse(BaseModel):
    """Response with user info."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    last_login_at: datetime | None
    created_at: datetime
