"""Token revocation ledger backed by the token_blacklist table.

Tokens are stored as SHA-256 hashes only. Entries exist to cover the window
between revocation and natural expiry, after which the cleanup sweep drops
them.
"""

import hashlib
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bms_auth.models.base import as_utc, utcnow
from bms_auth.models.enums import BlacklistReason, TokenType
from bms_auth.models.token_blacklist import TokenBlacklist
from bms_auth.services.errors import LedgerUnavailableError
from bms_auth.services.token_codec import TokenCodec

logger = logging.getLogger(__name__)

DEFAULT_PRUNE_BATCH_SIZE = 500


def hash_token(token: str) -> str:
    """One-way hash of a raw token string (hex SHA-256)."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class RevocationLedger:
    """Records tokens that must stop working before they expire."""

    def __init__(
        self,
        session: AsyncSession,
        codec: TokenCodec,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.codec = codec
        self._clock = clock

    async def revoke(
        self,
        token: str,
        kind: TokenType,
        reason: BlacklistReason,
        *,
        expires_at: datetime | None = None,
    ) -> None:
        """Revoke a raw token.

        The expiry is read from the (signature-checked) token unless given.
        Raises InvalidTokenError for tokens this service did not sign.
        """
        if expires_at is None:
            expires_at = self.codec.read_expiry(token)
        await self.revoke_hash(hash_token(token), kind, expires_at, reason)

    async def revoke_hash(
        self,
        token_hash: str,
        kind: TokenType,
        expires_at: datetime,
        reason: BlacklistReason,
    ) -> None:
        """Revoke a token known only by its hash. Idempotent."""
        existing = await self.session.get(TokenBlacklist, token_hash)
        if existing is not None:
            return

        self.session.add(
            TokenBlacklist(
                token_hash=token_hash,
                token_type=kind,
                expires_at=as_utc(expires_at),
                reason=reason,
                created_at=self._clock(),
            )
        )
        await self.session.flush()
        logger.debug(f"Revoked {kind.value} token {token_hash[:12]} ({reason.value})")

    async def is_revoked(self, token: str) -> bool:
        """Check whether a raw token has been revoked.

        Raises LedgerUnavailableError if the lookup itself fails; callers
        must then treat the request as unauthenticated.
        """
        token_hash = hash_token(token)
        try:
            result = await self.session.execute(
                select(TokenBlacklist.token_hash).where(TokenBlacklist.token_hash == token_hash)
            )
        except SQLAlchemyError as e:
            logger.error(f"Revocation ledger lookup failed: {e}")
            raise LedgerUnavailableError("Revocation ledger unavailable") from e
        return result.scalar_one_or_none() is not None

    async def prune(self, batch_size: int = DEFAULT_PRUNE_BATCH_SIZE) -> int:
        """Delete entries whose copied expiry has passed. Returns count removed.

        Deletes in batches and commits after each one, so no lock is held
        across the whole sweep.
        """
        total = 0
        while True:
            now = self._clock()
            batch = (
                select(TokenBlacklist.token_hash)
                .where(TokenBlacklist.expires_at < now)
                .limit(batch_size)
            )
            hashes = list((await self.session.execute(batch)).scalars())
            if not hashes:
                break

            result: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
                delete(TokenBlacklist).where(TokenBlacklist.token_hash.in_(hashes))
            )
            await self.session.commit()
            total += result.rowcount or 0

            if len(hashes) < batch_size:
                break

        if total:
            logger.info(f"Pruned {total} expired revocation ledger entries")
        return total
