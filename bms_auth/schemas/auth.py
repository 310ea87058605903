"""Pydantic schemas for authentication API."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from bms_auth.models.enums import UserRole


class LoginRequest(BaseModel):
    """Request for login."""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    """Access token returned in the body; the refresh token travels in a cookie."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(description="Access token expiry in seconds")
    session_id: str


class LoginResponse(TokenResponse):
    """Response after a successful login."""

    user: "UserResponse"


class RefreshRequest(BaseModel):
    """Request for token refresh when the cookie is not available."""

    refresh_token: str | None = None


class ChangePasswordRequest(BaseModel):
    """Request for password change."""

    current_password: str = Field(..., min_length=1)
    new_password: str = Field(
        ...,
        min_length=12,
        max_length=128,
        description="New password (minimum 12 characters)",
    )


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str


class RevokedCountResponse(MessageResponse):
    """Message plus how many sessions were ended."""

    revoked: int


class UserResponse(BaseModel):
    """Response with user information."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    first_name: str | None
    last_name: str | None
    role: UserRole
    is_active: bool
    last_login_at: datetime | None
    created_at: datetime


class CurrentUserResponse(UserResponse):
    """The current user plus the permissions carried by their token."""

    permissions: list[str]
    session_id: str


LoginResponse.model_rebuild()
