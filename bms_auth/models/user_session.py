"""Login session model."""

import uuid
from datetime import datetime, timedelta

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from bms_auth.models.base import BaseModel, as_utc, utcnow
from bms_auth.models.enums import BlacklistReason


def parse_device_type(user_agent: str | None) -> str:
    """Classify a User-Agent string as Desktop, Mobile, Tablet or Unknown."""
    if not user_agent:
        return "Unknown"
    ua = user_agent.lower()
    if "ipad" in ua or "tablet" in ua or ("android" in ua and "mobile" not in ua):
        return "Tablet"
    if "mobile" in ua or "iphone" in ua or "android" in ua:
        return "Mobile"
    return "Desktop"


def parse_browser(user_agent: str | None) -> str:
    """Best-effort browser family from a User-Agent string."""
    if not user_agent:
        return "Unknown"
    # Order matters: Edge and Opera UAs also contain "Chrome", Chrome contains "Safari"
    for marker, name in (
        ("Edg/", "Edge"),
        ("OPR/", "Opera"),
        ("Firefox/", "Firefox"),
        ("Chrome/", "Chrome"),
        ("Safari/", "Safari"),
    ):
        if marker in user_agent:
            return name
    return "Unknown"


class UserSession(BaseModel):
    """One logged-in device/browser for a user.

    The session outlives individual access tokens: a refresh re-binds the
    token hashes but keeps the same ``session_id``. The effective deadline is
    computed lazily as the earlier of the absolute deadline (``expires_at``)
    and ``last_activity_at + idle timeout``.
    """

    __tablename__ = "user_sessions"
    __table_args__ = (
        Index("ix_user_sessions_user_active_created", "user_id", "is_active", "created_at"),
    )

    session_id: Mapped[str] = mapped_column(
        String(36),
        unique=True,
        nullable=False,
        index=True,
        default=lambda: str(uuid.uuid4()),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Client metadata
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    device_type: Mapped[str] = mapped_column(String(16), nullable=False, default="Unknown")
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)

    # Lifecycle
    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_reason: Mapped[BlacklistReason | None] = mapped_column(
        Enum(BlacklistReason, native_enum=False, length=32), nullable=True
    )

    # Hashes of the session's current tokens (never the tokens themselves)
    access_token_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    access_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    refresh_token_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    refresh_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def idle_deadline(self, idle_timeout: timedelta) -> datetime:
        return as_utc(self.last_activity_at) + idle_timeout

    def absolute_deadline(self) -> datetime:
        return as_utc(self.expires_at)

    def effective_expiry(self, idle_timeout: timedelta) -> datetime:
        """Earlier of the idle and absolute deadlines."""
        return min(self.absolute_deadline(), self.idle_deadline(idle_timeout))

    @property
    def browser(self) -> str:
        return parse_browser(self.user_agent)

    def __repr__(self) -> str:
        state = "active" if self.is_active else "ended"
        return f"<UserSession {self.session_id} user={self.user_id} {state}>"
