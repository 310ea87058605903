"""Authentication service: credentials, login, refresh and logout."""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerifyMismatchError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bms_auth.core.config import Settings, get_settings
from bms_auth.models.base import as_utc
from bms_auth.models.enums import AuditAction, BlacklistReason, TokenType, UserRole
from bms_auth.models.user import User
from bms_auth.models.user_session import UserSession
from bms_auth.services.audit import AuditService
from bms_auth.services.errors import (
    AccountLockedError,
    AuthError,
    InvalidCredentialsError,
    InvalidTokenError,
    RevokedTokenError,
    SessionExpiredError,
    SessionNotFoundError,
    UserInactiveError,
)
from bms_auth.services.permissions import PermissionResolver, get_permission_resolver
from bms_auth.services.revocation import hash_token
from bms_auth.services.session_guard import AuthenticatedPrincipal, SessionGuard

logger = logging.getLogger(__name__)

# Argon2 password hasher with recommended parameters
# Memory: 64 MiB, Time: 3 iterations, Parallelism: 4
ph = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=4,
    hash_len=32,
    salt_len=16,
)

# Verified against when the email is unknown so both paths cost the same
_DUMMY_HASH = ph.hash("dummy-password-for-timing")


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""
    return ph.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash using constant-time comparison."""
    try:
        ph.verify(password_hash, password)
        return True
    except (VerifyMismatchError, InvalidHashError):
        return False


@dataclass(frozen=True)
class LoginResult:
    """Everything the login endpoint hands back to the client."""

    user: User
    session_id: str
    access_token: str
    refresh_token: str
    expires_in: int


@dataclass(frozen=True)
class RefreshResult:
    access_token: str
    expires_in: int
    session_id: str


class AuthService:
    """Service for authentication operations."""

    def __init__(
        self,
        session: AsyncSession,
        guard: SessionGuard,
        resolver: PermissionResolver | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session = session
        self.guard = guard
        self.codec = guard.codec
        self.resolver = resolver or get_permission_resolver()
        self.settings = settings or get_settings()
        self._clock = clock or guard.clock
        self.store = guard.store(session)
        self.ledger = self.store.ledger
        self.audit: AuditService = guard.audit(session)

    @property
    def access_expires_in(self) -> int:
        return int(self.codec.access_lifetime.total_seconds())

    # --- Users ----------------------------------------------------------

    async def get_user_by_email(self, email: str) -> User | None:
        """Get user by email (case-insensitive)."""
        result = await self.session.execute(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: uuid.UUID) -> User | None:
        """Get user by ID."""
        return await self.session.get(User, user_id)

    async def create_user(
        self,
        email: str,
        password: str,
        role: UserRole = UserRole.TENANT,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> User:
        """Create a user with a hashed password."""
        if await self.get_user_by_email(email) is not None:
            raise AuthError(f"Email address already exists: {email}")

        user = User(
            email=email.strip().lower(),
            password_hash=hash_password(password),
            role=role,
            first_name=first_name,
            last_name=last_name,
        )
        self.session.add(user)
        await self.session.flush()
        await self.audit.log(
            AuditAction.REGISTRATION, user_id=user.id, details={"role": role.value}
        )
        await self.session.commit()
        await self.session.refresh(user)

        logger.info(f"Created user {user.email} with role {role.value}")
        return user

    # --- Login ----------------------------------------------------------

    async def authenticate(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> User:
        """Check credentials and the lockout state, returning the user.

        Raises InvalidCredentialsError for both "user not found" and
        "wrong password" to prevent user enumeration. Failed-attempt
        counters and the LOGIN_FAILED audit row are committed before the
        error is raised.
        """
        user = await self.get_user_by_email(email)

        if user is None:
            # Perform a dummy verification to prevent timing attacks
            verify_password(password, _DUMMY_HASH)
            logger.warning("Login failed: unknown email")
            await self.audit.log_login_failed(
                "User not found",
                ip_address=ip_address,
                user_agent=user_agent,
                email=email.strip().lower(),
            )
            await self.session.commit()
            raise InvalidCredentialsError("Invalid email or password")

        now = self._clock()
        if user.locked_until is not None:
            locked_until = as_utc(user.locked_until)
            if locked_until > now:
                logger.warning(
                    f"Login attempt for locked account {user.id}",
                    extra={"user_id": str(user.id)},
                )
                await self.audit.log_login_failed(
                    "Account locked",
                    user_id=user.id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    locked_until=locked_until,
                )
                await self.session.commit()
                raise AccountLockedError(
                    f"Account is locked until {locked_until.isoformat()}",
                    locked_until=locked_until,
                )
            # Lock period is over
            user.locked_until = None
            user.failed_login_attempts = 0
            logger.info(f"Account automatically unlocked: {user.id}")

        if not verify_password(password, user.password_hash):
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= self.settings.max_failed_login_attempts:
                user.locked_until = now + timedelta(minutes=self.settings.account_lock_minutes)
                logger.warning(
                    f"Account {user.id} locked after {user.failed_login_attempts} failed attempts",
                    extra={"user_id": str(user.id)},
                )
            await self.audit.log_login_failed(
                "Invalid password",
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                failed_attempts=user.failed_login_attempts,
            )
            await self.session.commit()
            raise InvalidCredentialsError("Invalid email or password")

        if not user.is_active:
            await self.audit.log_login_failed(
                "Account deactivated",
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            await self.session.commit()
            raise UserInactiveError("User account is deactivated")

        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login_at = now
        return user

    async def login(
        self,
        email: str,
        password: str,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> LoginResult:
        """Authenticate, open a session and issue its access and refresh tokens."""
        user = await self.authenticate(email, password, ip_address, user_agent)

        user_session = await self.store.create(user.id, user_agent, ip_address)
        access_token, refresh_token = self._issue_pair(user, user_session)
        await self.store.bind_tokens(user_session, access_token, refresh_token)
        await self.audit.log_login_success(
            user.id, user_session.session_id, ip_address, user_agent
        )
        await self.session.commit()

        logger.info(
            f"User logged in: {user.id}",
            extra={"user_id": str(user.id), "session_id": user_session.session_id},
        )
        return LoginResult(
            user=user,
            session_id=user_session.session_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_expires_in,
        )

    async def record_rate_limited(
        self,
        email: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Audit a login refused by the per-IP rate limit."""
        await self.audit.log_login_failed(
            "Rate limited",
            ip_address=ip_address,
            user_agent=user_agent,
            email=email.strip().lower(),
        )
        await self.session.commit()

    def _issue_pair(self, user: User, user_session: UserSession) -> tuple[str, str]:
        permissions = self.resolver.permission_strings(user.role)
        access_token = self.codec.issue(
            str(user.id),
            user.role.value,
            permissions,
            TokenType.ACCESS,
            session_id=user_session.session_id,
            email=user.email,
        )
        refresh_token = self.codec.issue(
            str(user.id),
            user.role.value,
            [],
            TokenType.REFRESH,
            session_id=user_session.session_id,
            email=user.email,
        )
        return access_token, refresh_token

    # --- Refresh --------------------------------------------------------

    async def refresh(
        self,
        refresh_token: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> RefreshResult:
        """Exchange a refresh token for a new access token in the same session.

        The session's deadlines are checked but a refresh does not count as
        activity, so background refreshes cannot keep an idle session alive.
        """
        claims = self.codec.verify(refresh_token, expected_kind=TokenType.REFRESH)

        if await self.ledger.is_revoked(refresh_token):
            logger.warning("Attempted to use revoked refresh token")
            raise RevokedTokenError("Token has been revoked")

        if not claims.session_id:
            raise SessionNotFoundError("Token is not bound to a session")
        try:
            user_session = await self.store.touch(claims.session_id, update_activity=False)
        except SessionExpiredError as e:
            ended = await self.store.get(claims.session_id)
            if ended is not None:
                await self.audit.log_session_timeout(
                    ended.user_id, ended.session_id, e.reason, ip_address, user_agent
                )
            await self.session.commit()
            raise

        if user_session.refresh_token_hash != hash_token(refresh_token):
            raise InvalidTokenError("Refresh token does not match session")

        user = await self.get_user_by_id(user_session.user_id)
        if user is None or str(user.id) != claims.subject_id:
            raise InvalidTokenError("User not found")
        if not user.is_active:
            raise UserInactiveError("User account is deactivated")

        access_token = self.codec.issue(
            str(user.id),
            user.role.value,
            self.resolver.permission_strings(user.role),
            TokenType.ACCESS,
            session_id=user_session.session_id,
            email=user.email,
        )
        await self.store.bind_tokens(user_session, access_token)
        await self.audit.log(
            AuditAction.TOKEN_REFRESH,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"session_id": user_session.session_id},
        )
        await self.session.commit()

        logger.debug(
            f"Access token refreshed for user {user.id}",
            extra={"user_id": str(user.id), "session_id": user_session.session_id},
        )
        return RefreshResult(
            access_token=access_token,
            expires_in=self.access_expires_in,
            session_id=user_session.session_id,
        )

    # --- Logout ---------------------------------------------------------

    async def logout(
        self,
        principal: AuthenticatedPrincipal,
        access_token: str | None = None,
        refresh_token: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """End the current session and revoke the presented tokens."""
        try:
            await self.store.revoke(principal.user_id, principal.session_id, BlacklistReason.LOGOUT)
        except SessionNotFoundError:
            logger.debug(f"Session {principal.session_id} already ended at logout")

        if access_token:
            await self.ledger.revoke(access_token, TokenType.ACCESS, BlacklistReason.LOGOUT)
        if refresh_token:
            try:
                await self.ledger.revoke(refresh_token, TokenType.REFRESH, BlacklistReason.LOGOUT)
            except InvalidTokenError:
                # A foreign or garbage cookie is simply not worth recording
                logger.debug("Ignoring unverifiable refresh token at logout")
        await self.audit.log(
            AuditAction.LOGOUT,
            user_id=principal.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"session_id": principal.session_id},
        )
        await self.session.commit()

        logger.info(
            f"User logged out: {principal.user_id}",
            extra={"user_id": str(principal.user_id), "session_id": principal.session_id},
        )

    async def logout_all(
        self,
        user_id: uuid.UUID,
        reason: BlacklistReason = BlacklistReason.LOGOUT_ALL,
        except_session_id: str | None = None,
        *,
        action: AuditAction = AuditAction.LOGOUT_ALL,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict | None = None,
    ) -> int:
        """End every session of a user. Returns the number ended.

        ``action`` is what the audit trail records: a self-service logout
        everywhere, or a force logout by an administrator.
        """
        revoked = await self.store.revoke_all(user_id, reason, except_session_id=except_session_id)
        await self.audit.log(
            action,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"revoked": revoked, "reason": reason.value, **(details or {})},
        )
        await self.session.commit()
        return revoked

    async def revoke_session(
        self,
        principal: AuthenticatedPrincipal,
        session_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """End one of the principal's own sessions.

        Raises SessionNotFoundError for unknown, ended or foreign sessions.
        """
        await self.store.revoke(principal.user_id, session_id, BlacklistReason.LOGOUT)
        await self.audit.log(
            AuditAction.SESSION_REVOKED,
            user_id=principal.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"session_id": session_id, "revoked_by": principal.session_id},
        )
        await self.session.commit()

    async def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> int:
        """Change a user's password and end all of their sessions."""
        if not verify_password(current_password, user.password_hash):
            raise InvalidCredentialsError("Current password is incorrect")

        user.password_hash = hash_password(new_password)
        revoked = await self.store.revoke_all(user.id, BlacklistReason.PASSWORD_RESET)
        await self.audit.log(
            AuditAction.PASSWORD_CHANGE,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"revoked": revoked},
        )
        await self.session.commit()

        logger.info(
            f"Password changed for user {user.id}; {revoked} sessions ended",
            extra={"user_id": str(user.id)},
        )
        return revoked
