"""Session authentication middleware.

Every request outside the public paths must carry an access token in
``Authorization: Bearer <token>``. The token is run through the SessionGuard
(signature, revocation ledger, session timeouts) once, before routing. On
success the resulting principal is attached as ``request.state.principal``.
"""

import logging

from fastapi import Request, Response
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from bms_auth.core.database import get_session_factory
from bms_auth.core.request_utils import get_bearer_token, get_client_ip, get_user_agent
from bms_auth.services.errors import (
    SessionError,
    SessionExpiredError,
    TokenError,
    UserInactiveError,
)
from bms_auth.services.session_guard import SessionGuard, get_session_guard

logger = logging.getLogger(__name__)

# Paths that never require a bearer token (exact or segment-boundary match)
PUBLIC_PATHS = [
    "/health",
    "/auth/login",
    "/auth/refresh",
    "/docs",
    "/redoc",
    "/openapi.json",
]


def is_public_path(path: str) -> bool:
    """Check whether a path is served without authentication."""
    return any(path == public or path.startswith(public + "/") for public in PUBLIC_PATHS)


def unauthenticated_response() -> JSONResponse:
    """The single 401 body for every token or session rejection."""
    return JSONResponse(
        status_code=401,
        content={"detail": "Authentication required", "code": "unauthenticated"},
        headers={"WWW-Authenticate": "Bearer"},
    )


def session_expired_response(error: SessionExpiredError) -> JSONResponse:
    """401 telling the client which session deadline passed."""
    return JSONResponse(
        status_code=401,
        content={"detail": str(error), "code": "session_expired", "reason": error.reason},
        headers={"WWW-Authenticate": "Bearer"},
    )


class SessionAuthMiddleware(BaseHTTPMiddleware):
    """Authenticate non-public requests with the SessionGuard.

    - Token must be in: Authorization: Bearer <token>
    - Returns 401 Unauthorized if the token, its revocation state or its
      session does not pass
    - No principal is attached to a rejected request
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        # Skip auth for CORS preflight requests (OPTIONS)
        # These are handled by CORSMiddleware and should never require auth
        if request.method == "OPTIONS":
            return await call_next(request)

        if is_public_path(path):
            return await call_next(request)

        token = get_bearer_token(request)
        if not token:
            logger.debug(f"Request without token: {request.method} {path}")
            return unauthenticated_response()

        guard: SessionGuard = getattr(request.app.state, "session_guard", None) or get_session_guard()

        try:
            async with get_session_factory(request)() as db:
                principal = await guard.authenticate(
                    db,
                    token,
                    ip_address=get_client_ip(request),
                    user_agent=get_user_agent(request),
                )
        except SessionExpiredError as e:
            logger.info(
                f"Session expired for: {request.method} {path} ({e.reason})",
                extra={"reason": e.reason, "client_ip": get_client_ip(request)},
            )
            return session_expired_response(e)
        except (TokenError, SessionError, UserInactiveError) as e:
            logger.warning(
                f"Rejected token for: {request.method} {path} - {type(e).__name__}: {e}",
                extra={"client_ip": get_client_ip(request)},
            )
            return unauthenticated_response()
        except SQLAlchemyError as e:
            logger.error(f"Authentication store unavailable for: {request.method} {path} - {e}")
            return unauthenticated_response()

        request.state.principal = principal
        return await call_next(request)
