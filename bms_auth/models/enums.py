"""Enumerations shared by the auth tables."""

from enum import Enum


class UserRole(str, Enum):
    """Closed set of roles a user can hold."""

    SUPER_ADMIN = "SUPER_ADMIN"
    PROPERTY_MANAGER = "PROPERTY_MANAGER"
    MAINTENANCE_SUPERVISOR = "MAINTENANCE_SUPERVISOR"
    FINANCE_MANAGER = "FINANCE_MANAGER"
    TENANT = "TENANT"
    VENDOR = "VENDOR"

    @classmethod
    def parse(cls, value: "str | UserRole | None") -> "UserRole | None":
        """Resolve a role name, returning None for unknown names."""
        if value is None:
            return None
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            return None


class TokenType(str, Enum):
    """Kind of credential token."""

    ACCESS = "ACCESS"
    REFRESH = "REFRESH"


class BlacklistReason(str, Enum):
    """Why a token was revoked (also used as a session end reason)."""

    LOGOUT = "LOGOUT"
    LOGOUT_ALL = "LOGOUT_ALL"
    IDLE_TIMEOUT = "IDLE_TIMEOUT"
    ABSOLUTE_TIMEOUT = "ABSOLUTE_TIMEOUT"
    PASSWORD_RESET = "PASSWORD_RESET"
    SECURITY_VIOLATION = "SECURITY_VIOLATION"


class AuditAction(str, Enum):
    """Authentication events recorded in the audit trail."""

    REGISTRATION = "REGISTRATION"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    LOGOUT = "LOGOUT"
    LOGOUT_ALL = "LOGOUT_ALL"
    SESSION_REVOKED = "SESSION_REVOKED"
    SESSION_TIMEOUT = "SESSION_TIMEOUT"
    FORCED_LOGOUT = "FORCED_LOGOUT"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
