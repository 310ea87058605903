"""Login session tracking with idle/absolute timeouts and a per-user cap."""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from bms_auth.core.config import Settings
from bms_auth.models.base import as_utc, utcnow
from bms_auth.models.enums import BlacklistReason, TokenType
from bms_auth.models.superseded_access_token import SupersededAccessToken
from bms_auth.models.user import User
from bms_auth.models.user_session import UserSession, parse_device_type
from bms_auth.services.errors import (
    SessionAbsoluteTimeoutError,
    SessionExpiredError,
    SessionIdleTimeoutError,
    SessionNotFoundError,
)
from bms_auth.services.revocation import RevocationLedger, hash_token

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_BATCH_SIZE = 500


@dataclass(frozen=True)
class SessionPolicy:
    """Timeouts and concurrency limit applied to every session."""

    idle_timeout: timedelta = timedelta(minutes=30)
    absolute_timeout: timedelta = timedelta(hours=12)
    max_concurrent_sessions: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionPolicy":
        return cls(
            idle_timeout=timedelta(seconds=settings.session_idle_timeout_seconds),
            absolute_timeout=timedelta(seconds=settings.session_absolute_timeout_seconds),
            max_concurrent_sessions=settings.max_concurrent_sessions,
        )


@dataclass(frozen=True)
class SessionSummary:
    """What a user sees about one of their active sessions."""

    session_id: str
    device_type: str
    browser: str
    ip_address: str | None
    created_at: datetime
    last_activity_at: datetime
    is_current: bool


@dataclass(frozen=True)
class SweepResult:
    """Outcome of one expired-session sweep."""

    expired: int = 0
    purged: int = 0


class SessionStore:
    """Creates, checks and ends login sessions.

    Every method works inside the caller's database transaction; the caller
    commits. Ending a session always revokes its current tokens through the
    ledger so already-issued access tokens stop working immediately.
    """

    def __init__(
        self,
        session: AsyncSession,
        ledger: RevocationLedger,
        policy: SessionPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.ledger = ledger
        self.policy = policy or SessionPolicy()
        self._clock = clock

    # --- Creation -----------------------------------------------------

    async def create(
        self,
        user_id: uuid.UUID,
        device_info: str | None,
        network_address: str | None,
    ) -> UserSession:
        """Start a session, evicting the user's oldest sessions past the cap.

        The user row is locked for the rest of the transaction, so two
        concurrent logins for the same user count and evict one after the
        other instead of both seeing the same count.
        """
        locked = await self.session.execute(
            select(User.id).where(User.id == user_id).with_for_update()
        )
        if locked.scalar_one_or_none() is None:
            raise ValueError(f"Unknown user: {user_id}")

        now = self._clock()
        result = await self.session.execute(
            select(UserSession)
            .where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
            .order_by(UserSession.created_at, UserSession.id)
            .with_for_update()
        )
        active = list(result.scalars())

        # Sessions that already timed out are ended with their real reason
        live: list[UserSession] = []
        for existing in active:
            reason = self._timeout_reason(existing, now)
            if reason is not None:
                await self.invalidate(existing, reason)
            else:
                live.append(existing)

        while len(live) >= self.policy.max_concurrent_sessions:
            oldest = live.pop(0)
            logger.info(
                f"Max concurrent sessions ({self.policy.max_concurrent_sessions}) reached "
                f"for user {user_id}. Evicting oldest session {oldest.session_id}",
                extra={"user_id": str(user_id), "session_id": oldest.session_id},
            )
            await self.invalidate(oldest, BlacklistReason.SECURITY_VIOLATION)

        user_session = UserSession(
            session_id=str(uuid.uuid4()),
            user_id=user_id,
            user_agent=device_info,
            device_type=parse_device_type(device_info),
            ip_address=network_address,
            created_at=now,
            last_activity_at=now,
            expires_at=now + self.policy.absolute_timeout,
            is_active=True,
        )
        self.session.add(user_session)
        await self.session.flush()

        logger.info(
            f"Created session {user_session.session_id} for user {user_id} "
            f"from {network_address} (device: {user_session.device_type})",
            extra={"user_id": str(user_id), "session_id": user_session.session_id},
        )
        return user_session

    async def bind_tokens(
        self,
        user_session: UserSession,
        access_token: str,
        refresh_token: str | None = None,
    ) -> None:
        """Remember the hashes and expiries of the session's current tokens.

        A replaced access token is kept as superseded so that ending the
        session later still revokes it.
        """
        codec = self.ledger.codec
        new_hash = hash_token(access_token)
        previous_hash = user_session.access_token_hash
        if previous_hash and previous_hash != new_hash:
            self.session.add(
                SupersededAccessToken(
                    token_hash=previous_hash,
                    user_session_id=user_session.id,
                    expires_at=self._token_expiry(
                        user_session.access_expires_at, TokenType.ACCESS, self._clock()
                    ),
                )
            )
        user_session.access_token_hash = new_hash
        user_session.access_expires_at = codec.read_expiry(access_token)
        if refresh_token is not None:
            user_session.refresh_token_hash = hash_token(refresh_token)
            user_session.refresh_expires_at = codec.read_expiry(refresh_token)
        await self.session.flush()

    # --- Lookup and activity -------------------------------------------

    async def get(self, session_id: str) -> UserSession | None:
        result = await self.session.execute(
            select(UserSession).where(UserSession.session_id == session_id)
        )
        return result.scalar_one_or_none()

    def _timeout_reason(self, user_session: UserSession, now: datetime) -> BlacklistReason | None:
        """Which deadline (if any) has passed. The absolute deadline wins ties."""
        if now >= user_session.absolute_deadline():
            return BlacklistReason.ABSOLUTE_TIMEOUT
        if now >= user_session.idle_deadline(self.policy.idle_timeout):
            return BlacklistReason.IDLE_TIMEOUT
        return None

    async def touch(self, session_id: str, *, update_activity: bool = True) -> UserSession:
        """Check both deadlines and record activity.

        On timeout the session is invalidated (tokens revoked, record marked
        inactive) and SessionIdleTimeoutError / SessionAbsoluteTimeoutError is
        raised. The invalidation is flushed, not committed.
        """
        user_session = await self.get(session_id)
        if user_session is None or not user_session.is_active:
            raise SessionNotFoundError("Session not found")

        now = self._clock()
        reason = self._timeout_reason(user_session, now)
        if reason is not None:
            logger.warning(
                f"Session {session_id} timed out ({reason.value}). Invalidating session.",
                extra={
                    "user_id": str(user_session.user_id),
                    "session_id": session_id,
                    "reason": reason.value,
                },
            )
            await self.invalidate(user_session, reason)
            error: SessionExpiredError
            if reason == BlacklistReason.ABSOLUTE_TIMEOUT:
                error = SessionAbsoluteTimeoutError()
            else:
                error = SessionIdleTimeoutError()
            raise error

        if update_activity:
            user_session.last_activity_at = now
            await self.session.flush()
        return user_session

    async def list_active(
        self,
        user_id: uuid.UUID,
        current_session_id: str | None = None,
    ) -> list[SessionSummary]:
        """Active sessions for a user, most recently used first."""
        now = self._clock()
        result = await self.session.execute(
            select(UserSession)
            .where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
            .order_by(UserSession.last_activity_at.desc(), UserSession.created_at.desc())
        )
        return [
            SessionSummary(
                session_id=s.session_id,
                device_type=s.device_type,
                browser=s.browser,
                ip_address=s.ip_address,
                created_at=as_utc(s.created_at),
                last_activity_at=as_utc(s.last_activity_at),
                is_current=s.session_id == current_session_id,
            )
            for s in result.scalars()
            if self._timeout_reason(s, now) is None
        ]

    # --- Ending sessions -------------------------------------------------

    async def invalidate(self, user_session: UserSession, reason: BlacklistReason) -> None:
        """Mark a session inactive and revoke every token it issued."""
        now = self._clock()
        user_session.is_active = False
        user_session.ended_at = now
        user_session.end_reason = reason

        if user_session.access_token_hash:
            await self.ledger.revoke_hash(
                user_session.access_token_hash,
                TokenType.ACCESS,
                self._token_expiry(user_session.access_expires_at, TokenType.ACCESS, now),
                reason,
            )
        if user_session.refresh_token_hash:
            await self.ledger.revoke_hash(
                user_session.refresh_token_hash,
                TokenType.REFRESH,
                self._token_expiry(user_session.refresh_expires_at, TokenType.REFRESH, now),
                reason,
            )

        superseded = await self.session.execute(
            select(SupersededAccessToken).where(
                SupersededAccessToken.user_session_id == user_session.id
            )
        )
        for earlier in superseded.scalars().all():
            expires_at = as_utc(earlier.expires_at)
            if expires_at > now:
                await self.ledger.revoke_hash(
                    earlier.token_hash, TokenType.ACCESS, expires_at, reason
                )
        # The ledger covers them from here on
        await self.session.execute(
            delete(SupersededAccessToken).where(
                SupersededAccessToken.user_session_id == user_session.id
            )
        )
        await self.session.flush()

        logger.info(
            f"Invalidated session {user_session.session_id} (reason: {reason.value})",
            extra={
                "user_id": str(user_session.user_id),
                "session_id": user_session.session_id,
                "reason": reason.value,
            },
        )

    def _token_expiry(
        self, stored: datetime | None, kind: TokenType, now: datetime
    ) -> datetime:
        if stored is not None:
            return as_utc(stored)
        return now + self.ledger.codec.lifetime(kind)

    async def revoke(
        self,
        user_id: uuid.UUID,
        session_id: str,
        reason: BlacklistReason = BlacklistReason.LOGOUT,
    ) -> None:
        """End one of the user's own sessions.

        Raises SessionNotFoundError if the session does not exist, is
        already ended, or belongs to someone else.
        """
        user_session = await self.get(session_id)
        if user_session is None or not user_session.is_active or user_session.user_id != user_id:
            raise SessionNotFoundError("Session not found")
        await self.invalidate(user_session, reason)

    async def revoke_all(
        self,
        user_id: uuid.UUID,
        reason: BlacklistReason = BlacklistReason.LOGOUT_ALL,
        *,
        except_session_id: str | None = None,
    ) -> int:
        """End every active session of a user (optionally keeping one)."""
        result = await self.session.execute(
            select(UserSession)
            .where(UserSession.user_id == user_id, UserSession.is_active.is_(True))
            .with_for_update()
        )
        revoked = 0
        for user_session in result.scalars().all():
            if user_session.session_id == except_session_id:
                continue
            await self.invalidate(user_session, reason)
            revoked += 1

        logger.info(
            f"Revoked {revoked} sessions for user {user_id} (reason: {reason.value})",
            extra={"user_id": str(user_id), "reason": reason.value},
        )
        return revoked

    # --- Background sweep ----------------------------------------------

    async def sweep_expired(self, batch_size: int = DEFAULT_SWEEP_BATCH_SIZE) -> SweepResult:
        """End timed-out sessions and purge ended ones whose tokens have expired.

        Works in batches and commits after each batch; safe to run while
        requests are being served.
        """
        expired = 0
        while True:
            now = self._clock()
            idle_cutoff = now - self.policy.idle_timeout
            result = await self.session.execute(
                select(UserSession)
                .where(
                    UserSession.is_active.is_(True),
                    or_(
                        UserSession.expires_at <= now,
                        UserSession.last_activity_at <= idle_cutoff,
                    ),
                )
                .limit(batch_size)
            )
            batch = list(result.scalars())
            if not batch:
                break
            for user_session in batch:
                reason = self._timeout_reason(user_session, now) or BlacklistReason.IDLE_TIMEOUT
                await self.invalidate(user_session, reason)
            await self.session.commit()
            expired += len(batch)
            if len(batch) < batch_size:
                break

        purged = 0
        while True:
            now = self._clock()
            ids_result = await self.session.execute(
                select(UserSession.id)
                .where(
                    UserSession.is_active.is_(False),
                    or_(
                        UserSession.access_expires_at.is_(None),
                        UserSession.access_expires_at < now,
                    ),
                    or_(
                        UserSession.refresh_expires_at.is_(None),
                        UserSession.refresh_expires_at < now,
                    ),
                    and_(UserSession.ended_at.is_not(None), UserSession.ended_at < now),
                )
                .limit(batch_size)
            )
            ids = list(ids_result.scalars())
            if not ids:
                break
            deleted: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
                delete(UserSession).where(UserSession.id.in_(ids))
            )
            await self.session.commit()
            purged += deleted.rowcount or 0
            if len(ids) < batch_size:
                break

        if expired or purged:
            logger.info(f"Session sweep: expired {expired}, purged {purged}")
        return SweepResult(expired=expired, purged=purged)
