"""Revoked tokens, keyed by a SHA-256 hash of the raw token string."""

from datetime import datetime

from sqlalchemy import DateTime, Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from bms_auth.core.database import Base
from bms_auth.models.base import utcnow
from bms_auth.models.enums import BlacklistReason, TokenType


class TokenBlacklist(Base):
    """A revoked token.

    The raw token is never stored. ``expires_at`` is copied from the token
    and only tells the cleanup sweep when the row can be dropped.
    """

    __tablename__ = "token_blacklist"

    token_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    token_type: Mapped[TokenType] = mapped_column(
        Enum(TokenType, native_enum=False, length=16), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    reason: Mapped[BlacklistReason] = mapped_column(
        Enum(BlacklistReason, native_enum=False, length=32), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<TokenBlacklist {self.token_hash[:12]}… {self.token_type.value} {self.reason.value}>"
