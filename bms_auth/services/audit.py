"""Security Audit Logging Service.

Persists authentication events to the ``audit_logs`` table:
- Registrations, successful and failed logins (with the failure reason)
- Token refreshes
- Logouts, revoked sessions and administrative force logouts
- Sessions ended by the idle or absolute timeout

Rows are added to the caller's transaction and committed with it, so an
event is recorded exactly when the change it describes is.
"""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from bms_auth.models.audit_log import AuditLog
from bms_auth.models.base import utcnow
from bms_auth.models.enums import AuditAction

logger = logging.getLogger(__name__)

DEFAULT_PURGE_BATCH_SIZE = 500

# Detail keys whose values never reach the audit table
SENSITIVE_KEYS = {
    "password",
    "secret",
    "token",
    "access_token",
    "refresh_token",
    "authorization",
}


class AuditService:
    """Service for recording and reading authentication audit events.

    All audit rows include:
    - Timestamp
    - Action type
    - User ID (when known)
    - Client IP address and user agent
    - Details about the event
    """

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self._clock = clock

    async def log(
        self,
        action: AuditAction,
        user_id: uuid.UUID | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditLog:
        """Record an audit event.

        Args:
            action: The audit action type
            user_id: Affected user, if known
            ip_address: IP address of the client
            user_agent: User-Agent of the client
            details: Additional event details (sensitive keys are redacted)

        Returns:
            The pending audit row
        """
        entry = AuditLog(
            user_id=user_id,
            action=action,
            ip_address=ip_address,
            user_agent=user_agent,
            details=self._sanitize_details(details) if details else None,
            created_at=self._clock(),
        )
        self.session.add(entry)
        await self.session.flush()

        logger.info(
            f"Audit: {action.value}",
            extra={
                "user_id": str(user_id) if user_id else None,
                "client_ip": ip_address,
            },
        )
        return entry

    def _sanitize_details(self, details: dict[str, Any]) -> dict[str, Any]:
        """Redact passwords and tokens, keeping whether a value was present."""
        sanitized: dict[str, Any] = {}
        for key, value in details.items():
            key_lower = key.lower()
            if any(s in key_lower for s in SENSITIVE_KEYS):
                sanitized[key] = "[REDACTED - set]" if value is not None else "[REDACTED - unset]"
            elif isinstance(value, dict):
                sanitized[key] = self._sanitize_details(value)
            elif isinstance(value, datetime):
                sanitized[key] = value.isoformat()
            else:
                sanitized[key] = value
        return sanitized

    # Convenience methods for common audit events

    async def log_login_success(
        self,
        user_id: uuid.UUID,
        session_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditLog:
        """Log a successful login and the session it opened."""
        return await self.log(
            AuditAction.LOGIN_SUCCESS,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"session_id": session_id},
        )

    async def log_login_failed(
        self,
        reason: str,
        user_id: uuid.UUID | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        **details: Any,
    ) -> AuditLog:
        """Log a rejected login with the reason it was rejected."""
        return await self.log(
            AuditAction.LOGIN_FAILED,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"reason": reason, **details},
        )

    async def log_session_timeout(
        self,
        user_id: uuid.UUID,
        session_id: str,
        reason: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditLog:
        """Log a session ended by its idle or absolute deadline."""
        return await self.log(
            AuditAction.SESSION_TIMEOUT,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"session_id": session_id, "reason": reason},
        )

    # Queries and retention

    async def list_for_user(self, user_id: uuid.UUID, limit: int = 50) -> list[AuditLog]:
        """Most recent events for a user, newest first."""
        result = await self.session.execute(
            select(AuditLog)
            .where(AuditLog.user_id == user_id)
            .order_by(AuditLog.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars())

    async def purge_older_than(
        self, cutoff: datetime, batch_size: int = DEFAULT_PURGE_BATCH_SIZE
    ) -> int:
        """Delete events created before ``cutoff``. Returns count removed.

        Deletes in batches and commits after each one.
        """
        purged = 0
        while True:
            ids_result = await self.session.execute(
                select(AuditLog.id).where(AuditLog.created_at < cutoff).limit(batch_size)
            )
            ids = list(ids_result.scalars())
            if not ids:
                break
            deleted: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
                delete(AuditLog).where(AuditLog.id.in_(ids))
            )
            await self.session.commit()
            purged += deleted.rowcount or 0
            if len(ids) < batch_size:
                break

        if purged:
            logger.info(f"Purged {purged} audit events older than {cutoff.isoformat()}")
        return purged
