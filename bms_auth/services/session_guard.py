"""Per-request authentication gate.

Runs token verification, the revocation check and the session timeout check
in that order. Each step is a possible rejection; only when all pass is an
AuthenticatedPrincipal produced.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession

from bms_auth.core.config import get_settings
from bms_auth.models.base import utcnow
from bms_auth.models.enums import TokenType
from bms_auth.models.user import User
from bms_auth.services.audit import AuditService
from bms_auth.services.errors import (
    InvalidTokenError,
    RevokedTokenError,
    SessionExpiredError,
    SessionNotFoundError,
    UserInactiveError,
)
from bms_auth.services.revocation import RevocationLedger
from bms_auth.services.session_store import SessionPolicy, SessionStore
from bms_auth.services.token_codec import TokenCodec, get_token_codec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedPrincipal:
    """Identity attached to a request that passed the guard."""

    user_id: uuid.UUID
    role: str
    permissions: frozenset[str]
    session_id: str
    token_expires_at: datetime
    email: str | None = None


class SessionGuard:
    """Combines the token codec, revocation ledger and session store."""

    def __init__(
        self,
        codec: TokenCodec,
        policy: SessionPolicy,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.codec = codec
        self.policy = policy
        self._clock = clock

    @property
    def clock(self) -> Callable[[], datetime]:
        return self._clock

    def ledger(self, db: AsyncSession) -> RevocationLedger:
        return RevocationLedger(db, self.codec, clock=self._clock)

    def store(self, db: AsyncSession) -> SessionStore:
        return SessionStore(db, self.ledger(db), self.policy, clock=self._clock)

    def audit(self, db: AsyncSession) -> AuditService:
        return AuditService(db, clock=self._clock)

    async def authenticate(
        self,
        db: AsyncSession,
        token: str | None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthenticatedPrincipal:
        """Authenticate one request's bearer token.

        Raises a TokenError, SessionError or UserInactiveError on rejection.
        A timeout detected by the session check is audited and committed
        before the error propagates, so the invalidation survives the failed
        request.
        """
        if not token:
            raise InvalidTokenError("Missing token")

        # Unauthenticated -> TokenVerified
        claims = self.codec.verify(token, expected_kind=TokenType.ACCESS)

        # TokenVerified -> not revoked
        if await self.ledger(db).is_revoked(token):
            raise RevokedTokenError("Token has been revoked")

        if not claims.session_id:
            raise SessionNotFoundError("Token is not bound to a session")
        try:
            user_id = uuid.UUID(claims.subject_id)
        except ValueError as e:
            raise InvalidTokenError("Malformed subject") from e

        # -> SessionChecked (touch records activity)
        try:
            user_session = await self.store(db).touch(claims.session_id)
        except SessionExpiredError as e:
            await self.audit(db).log_session_timeout(
                user_id, claims.session_id, e.reason, ip_address, user_agent
            )
            await db.commit()
            raise

        if user_session.user_id != user_id:
            logger.warning(
                f"Token subject {user_id} does not own session {claims.session_id}",
                extra={"user_id": str(user_id), "session_id": claims.session_id},
            )
            raise SessionNotFoundError("Session not found")

        user = await db.get(User, user_id)
        if user is None:
            raise InvalidTokenError("User not found")
        if not user.is_active:
            raise UserInactiveError("User account is deactivated")

        await db.commit()

        # -> Authenticated
        return AuthenticatedPrincipal(
            user_id=user_id,
            role=claims.role,
            permissions=frozenset(claims.permissions),
            session_id=claims.session_id,
            token_expires_at=claims.expires_at,
            email=claims.email,
        )


@lru_cache
def get_session_guard() -> SessionGuard:
    """Process-wide guard built from settings."""
    return SessionGuard(get_token_codec(), SessionPolicy.from_settings(get_settings()))
