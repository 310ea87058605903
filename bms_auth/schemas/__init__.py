# Ultra BMS Auth Pydantic Schemas
from bms_auth.schemas.auth import (
    ChangePasswordRequest,
    CurrentUserResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshRequest,
    RevokedCountResponse,
    TokenResponse,
    UserResponse,
)
from bms_auth.schemas.session import (
    AuditEventListResponse,
    AuditEventResponse,
    PermissionsResponse,
    SessionListResponse,
    SessionResponse,
)

__all__ = [
    # Auth
    "ChangePasswordRequest",
    "CurrentUserResponse",
    "LoginRequest",
    "LoginResponse",
    "MessageResponse",
    "RefreshRequest",
    "RevokedCountResponse",
    "TokenResponse",
    "UserResponse",
    # Sessions
    "AuditEventListResponse",
    "AuditEventResponse",
    "PermissionsResponse",
    "SessionListResponse",
    "SessionResponse",
]
