"""Authentication and authorization errors."""


class AuthError(Exception):
    """Base authentication error."""

    pass


class InvalidCredentialsError(AuthError):
    """Invalid email or password."""

    pass


class AccountLockedError(AuthError):
    """Account is temporarily locked after repeated failed logins."""

    def __init__(self, message: str, locked_until=None):
        super().__init__(message)
        self.locked_until = locked_until


class UserInactiveError(AuthError):
    """User account is deactivated."""

    pass


class TokenError(AuthError):
    """Credential token error."""

    pass


class InvalidTokenError(TokenError):
    """Token is malformed, has a bad signature, or is the wrong kind."""

    pass


class ExpiredTokenError(TokenError):
    """Token signature is valid but the token has expired."""

    pass


class RevokedTokenError(TokenError):
    """Token was revoked before its natural expiry."""

    pass


class LedgerUnavailableError(TokenError):
    """The revocation ledger could not be consulted."""

    pass


class SessionError(AuthError):
    """Login session error."""

    pass


class SessionNotFoundError(SessionError):
    """No active session matches (or it belongs to another user)."""

    pass


class SessionExpiredError(SessionError):
    """Session exceeded one of its timeouts and has been invalidated."""

    reason = "expired"
    message = "Your session has expired. Please log in again."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


class SessionIdleTimeoutError(SessionExpiredError):
    """No activity for longer than the idle timeout."""

    reason = "idle"
    message = "Your session expired due to inactivity. Please log in again."


class SessionAbsoluteTimeoutError(SessionExpiredError):
    """Session reached its maximum lifetime."""

    reason = "absolute"
    message = "Your session reached its maximum duration. Please log in again."


class PermissionDeniedError(Exception):
    """
    Raised when an authenticated user lacks a required permission.

    Attributes:
        user_id: The user who was denied
        action: The action that was denied
        required_permissions: The permissions that would have allowed it
    """

    def __init__(self, user_id: str, action: str, required_permissions: tuple[str, ...] = ()):
        self.user_id = user_id
        self.action = action
        self.required_permissions = required_permissions

        message = f"User {user_id} denied permission for action: {action}"
        if required_permissions:
            message += f" (requires: {', '.join(required_permissions)})"

        super().__init__(message)
