"""Access tokens replaced by a refresh while their session stays open."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from bms_auth.core.database import Base
from bms_auth.models.base import utcnow


class SupersededAccessToken(Base):
    """Hash of an earlier access token of a still-open session.

    A refresh moves the session's current access token hash here. The token
    keeps working until it expires, and ending the session revokes it along
    with the current pair.
    """

    __tablename__ = "superseded_access_tokens"

    token_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("user_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<SupersededAccessToken {self.token_hash[:12]}… session={self.user_session_id}>"
