"""Signed, expiring credential tokens (JWT).

Two kinds are issued: short-lived access tokens and long-lived refresh
tokens. Both carry the subject id, role, the permission snapshot taken at
issuance and the session they belong to. Verification is stateless; the
revocation ledger is consulted separately by the session guard.
"""

import logging
import secrets
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any

import jwt
from cryptography.hazmat.primitives import serialization
from jwt.exceptions import PyJWTError

from bms_auth.core.config import SYMMETRIC_ALGORITHMS, Settings, get_settings
from bms_auth.models.base import utcnow
from bms_auth.models.enums import TokenType
from bms_auth.services.errors import ExpiredTokenError, InvalidTokenError

logger = logging.getLogger(__name__)

# Claim value of "type" for each token kind
_KIND_CLAIMS = {TokenType.ACCESS: "access", TokenType.REFRESH: "refresh"}
_CLAIM_KINDS = {v: k for k, v in _KIND_CLAIMS.items()}

_REQUIRED_CLAIMS = ["sub", "exp", "iat", "jti", "type", "iss"]


@dataclass(frozen=True)
class TokenClaims:
    """
    Decoded and verified token claims.

    Attributes:
        subject_id: User UUID as a string
        role: Role name at issuance
        permissions: Permission snapshot at issuance
        kind: ACCESS or REFRESH
        issued_at: Issue time (second precision, UTC)
        expires_at: Expiry time (second precision, UTC)
        jti: Random token id
        session_id: Session the token belongs to, if any
        email: User email, informational only
    """

    subject_id: str
    role: str
    permissions: tuple[str, ...]
    kind: TokenType
    issued_at: datetime
    expires_at: datetime
    jti: str
    session_id: str | None = None
    email: str | None = field(default=None, compare=False)


class TokenCodec:
    """Issues and verifies credential tokens with in-memory key material."""

    def __init__(
        self,
        signing_key: Any,
        verifying_key: Any,
        algorithm: str = "HS256",
        access_lifetime: timedelta = timedelta(hours=1),
        refresh_lifetime: timedelta = timedelta(days=7),
        issuer: str = "ultrabms",
        clock: Callable[[], datetime] = utcnow,
    ):
        if access_lifetime <= timedelta(0) or refresh_lifetime <= timedelta(0):
            raise ValueError("Token lifetimes must be positive")
        self.algorithm = algorithm
        self.access_lifetime = access_lifetime
        self.refresh_lifetime = refresh_lifetime
        self.issuer = issuer
        self._signing_key = signing_key
        self._verifying_key = verifying_key
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, clock: Callable[[], datetime] = utcnow
    ) -> "TokenCodec":
        """Build a codec from application settings, loading PEM keys if needed."""
        if settings.jwt_algorithm in SYMMETRIC_ALGORITHMS:
            signing_key = verifying_key = settings.jwt_secret_key
        else:
            signing_key = serialization.load_pem_private_key(
                Path(settings.jwt_private_key_path).read_bytes(), password=None
            )
            verifying_key = serialization.load_pem_public_key(
                Path(settings.jwt_public_key_path).read_bytes()
            )

        codec = cls(
            signing_key=signing_key,
            verifying_key=verifying_key,
            algorithm=settings.jwt_algorithm,
            access_lifetime=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_lifetime=timedelta(seconds=settings.refresh_token_expire_seconds),
            issuer=settings.jwt_issuer,
            clock=clock,
        )
        logger.info(
            f"Token codec initialized: algorithm={codec.algorithm}, "
            f"access={settings.access_token_expire_seconds}s, "
            f"refresh={settings.refresh_token_expire_seconds}s"
        )
        return codec

    def now(self) -> datetime:
        return self._clock()

    def lifetime(self, kind: TokenType) -> timedelta:
        return self.access_lifetime if kind == TokenType.ACCESS else self.refresh_lifetime

    def issue(
        self,
        subject_id: str,
        role: str,
        permissions: Sequence[str],
        kind: TokenType = TokenType.ACCESS,
        *,
        session_id: str | None = None,
        email: str | None = None,
    ) -> str:
        """
        Create a signed token.

        Args:
            subject_id: User UUID (string form)
            role: Role name
            permissions: Resolved permission strings, embedded as a snapshot
            kind: ACCESS or REFRESH
            session_id: Session the token is bound to
            email: Informational email claim

        Returns:
            Compact JWT string
        """
        if not subject_id:
            raise ValueError("subject_id is required")

        issued_at = self._clock().astimezone(UTC).replace(microsecond=0)
        expires_at = issued_at + self.lifetime(kind)

        payload: dict[str, Any] = {
            "iss": self.issuer,
            "sub": str(subject_id),
            "role": role,
            "permissions": list(permissions),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": secrets.token_urlsafe(16),
            "type": _KIND_CLAIMS[kind],
        }
        if session_id is not None:
            payload["sid"] = session_id
        if email is not None:
            payload["email"] = email

        token = jwt.encode(payload, self._signing_key, algorithm=self.algorithm)
        logger.debug(f"Issued {kind.value.lower()} token for subject {subject_id}")
        # PyJWT 2.x returns str; older type stubs may declare bytes
        return str(token)

    def _decode(self, token: str) -> dict[str, Any]:
        """Check the signature and claim shapes; expiry is checked by the caller."""
        if not token or not isinstance(token, str):
            raise InvalidTokenError("Token is empty")
        try:
            return jwt.decode(
                token,
                self._verifying_key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                options={
                    # Time-based claims are checked against the codec clock below
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": _REQUIRED_CLAIMS,
                },
            )
        except PyJWTError as e:
            raise InvalidTokenError(f"Invalid token: {e}") from e

    def verify(self, token: str, expected_kind: TokenType | None = None) -> TokenClaims:
        """
        Verify a token and return its claims.

        The signature is checked first, then the expiry. An expired but
        validly signed token raises ExpiredTokenError; anything else that
        fails raises InvalidTokenError.
        """
        payload = self._decode(token)

        kind = _CLAIM_KINDS.get(payload.get("type"))
        if kind is None:
            raise InvalidTokenError("Unknown token type")
        if expected_kind is not None and kind != expected_kind:
            raise InvalidTokenError(f"Not an {_KIND_CLAIMS[expected_kind]} token")

        try:
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=UTC)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=UTC)
        except (TypeError, ValueError, OverflowError) as e:
            raise InvalidTokenError("Malformed time claims") from e
        if expires_at <= issued_at:
            raise InvalidTokenError("Token expires before it was issued")

        permissions = payload.get("permissions", [])
        role = payload.get("role")
        if not isinstance(permissions, list) or not all(isinstance(p, str) for p in permissions):
            raise InvalidTokenError("Malformed permissions claim")
        if not isinstance(role, str):
            raise InvalidTokenError("Malformed role claim")

        if self._clock() >= expires_at:
            raise ExpiredTokenError("Token has expired")

        return TokenClaims(
            subject_id=payload["sub"],
            role=role,
            permissions=tuple(permissions),
            kind=kind,
            issued_at=issued_at,
            expires_at=expires_at,
            jti=payload["jti"],
            session_id=payload.get("sid"),
            email=payload.get("email"),
        )

    def read_expiry(self, token: str) -> datetime:
        """Return a signature-checked token's expiry, even if it has passed."""
        payload = self._decode(token)
        try:
            return datetime.fromtimestamp(int(payload["exp"]), tz=UTC)
        except (TypeError, ValueError, OverflowError) as e:
            raise InvalidTokenError("Malformed exp claim") from e


@lru_cache
def get_token_codec() -> TokenCodec:
    """Process-wide codec built from settings."""
    return TokenCodec.from_settings(get_settings())
