# Ultra BMS Auth Models
from bms_auth.models.audit_log import AuditLog
from bms_auth.models.base import BaseModel
from bms_auth.models.enums import AuditAction, BlacklistReason, TokenType, UserRole
from bms_auth.models.superseded_access_token import SupersededAccessToken
from bms_auth.models.token_blacklist import TokenBlacklist
from bms_auth.models.user import User
from bms_auth.models.user_session import UserSession

__all__ = [
    "AuditAction",
    "AuditLog",
    "BaseModel",
    "BlacklistReason",
    "SupersededAccessToken",
    "TokenBlacklist",
    "TokenType",
    "User",
    "UserRole",
    "UserSession",
]
