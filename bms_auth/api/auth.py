"""Authentication API endpoints."""

import logging
import time
from collections import defaultdict

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from bms_auth.api.deps import get_auth_service, get_current_principal, get_current_user
from bms_auth.core import settings
from bms_auth.core.request_utils import get_bearer_token, get_client_ip, get_user_agent
from bms_auth.middleware.session_auth import session_expired_response, unauthenticated_response
from bms_auth.models.user import User
from bms_auth.schemas.auth import (
    ChangePasswordRequest,
    CurrentUserResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshRequest,
    RevokedCountResponse,
    TokenResponse,
    UserResponse,
)
from bms_auth.services.auth import AuthService
from bms_auth.services.errors import (
    AccountLockedError,
    InvalidCredentialsError,
    SessionError,
    SessionExpiredError,
    TokenError,
    UserInactiveError,
)
from bms_auth.services.session_guard import AuthenticatedPrincipal

logger = logging.getLogger(__name__)

# Rate limiting for login attempts (failed attempts per client IP)
_login_attempts: dict[str, list[float]] = defaultdict(list)


def _check_login_rate_limit(client_ip: str) -> None:
    """Check if a client IP has exceeded the login attempt rate limit."""
    now = time.monotonic()
    window = settings.login_rate_limit_window_seconds
    recent = [t for t in _login_attempts.get(client_ip, []) if now - t < window]
    # Clients with nothing left in the window are forgotten entirely
    if recent:
        _login_attempts[client_ip] = recent
    else:
        _login_attempts.pop(client_ip, None)
    if len(recent) >= settings.login_rate_limit_attempts:
        logger.warning("Login rate limit exceeded for %s", client_ip, extra={"client_ip": client_ip})
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts. Please try again later.",
            headers={"Retry-After": str(window)},
        )


def _record_login_attempt(client_ip: str) -> None:
    """Record a failed login attempt for rate limiting."""
    _login_attempts[client_ip].append(time.monotonic())


def reset_login_rate_limit() -> None:
    """Forget all recorded login attempts."""
    _login_attempts.clear()


def _set_refresh_cookie(response: Response, refresh_token: str) -> None:
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=refresh_token,
        max_age=settings.refresh_token_expire_seconds,
        path=settings.refresh_cookie_path,
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite=settings.refresh_cookie_samesite,
    )


def _clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite=settings.refresh_cookie_samesite,
    )


def _refresh_token_from(request: Request, body: RefreshRequest | None) -> str | None:
    """Refresh token from the HTTP-only cookie, falling back to the body."""
    token = request.cookies.get(settings.refresh_cookie_name)
    if not token and body is not None:
        token = body.refresh_token
    return token or None


router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=LoginResponse)
async def login(
    request: LoginRequest,
    http_request: Request,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    """Authenticate and open a session.

    Returns the access token in the body and sets the refresh token as an
    HTTP-only cookie. Rate limited to 5 failed attempts per minute per IP.
    """
    client_ip = get_client_ip(http_request) or "unknown"
    user_agent = get_user_agent(http_request)
    try:
        _check_login_rate_limit(client_ip)
    except HTTPException:
        await auth_service.record_rate_limited(
            request.email, get_client_ip(http_request), user_agent
        )
        raise

    try:
        result = await auth_service.login(
            email=request.email,
            password=request.password,
            user_agent=user_agent,
            ip_address=get_client_ip(http_request),
        )
    except InvalidCredentialsError as e:
        _record_login_attempt(client_ip)
        logger.warning("Failed login from %s", client_ip, extra={"client_ip": client_ip})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        ) from e
    except AccountLockedError as e:
        _record_login_attempt(client_ip)
        raise HTTPException(
            status_code=status.HTTP_423_LOCKED,
            detail="Account is temporarily locked due to too many failed login attempts",
        ) from e
    except UserInactiveError as e:
        _record_login_attempt(client_ip)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is deactivated",
        ) from e

    _set_refresh_cookie(response, result.refresh_token)
    return LoginResponse(
        access_token=result.access_token,
        expires_in=result.expires_in,
        session_id=result.session_id,
        user=UserResponse.model_validate(result.user),
    )


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    http_request: Request,
    body: RefreshRequest | None = None,
    auth_service: AuthService = Depends(get_auth_service),
) -> TokenResponse | Response:
    """Issue a new access token for the refresh token's session.

    The refresh token is read from the cookie, or from the body for
    non-browser clients. Refreshing does not extend the idle timeout.
    """
    token = _refresh_token_from(http_request, body)
    if not token:
        return unauthenticated_response()

    try:
        result = await auth_service.refresh(
            token,
            ip_address=get_client_ip(http_request),
            user_agent=get_user_agent(http_request),
        )
    except SessionExpiredError as e:
        failed = session_expired_response(e)
        _clear_refresh_cookie(failed)
        return failed
    except (TokenError, SessionError, UserInactiveError) as e:
        logger.warning(f"Refresh rejected: {type(e).__name__}: {e}")
        failed = unauthenticated_response()
        _clear_refresh_cookie(failed)
        return failed

    return TokenResponse(
        access_token=result.access_token,
        expires_in=result.expires_in,
        session_id=result.session_id,
    )


@router.post("/logout", response_model=MessageResponse)
async def logout(
    http_request: Request,
    response: Response,
    body: RefreshRequest | None = None,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """End the current session and revoke its tokens."""
    await auth_service.logout(
        principal,
        access_token=get_bearer_token(http_request),
        refresh_token=_refresh_token_from(http_request, body),
        ip_address=get_client_ip(http_request),
        user_agent=get_user_agent(http_request),
    )
    _clear_refresh_cookie(response)
    return MessageResponse(message="Logged out successfully")


@router.post("/logout-all", response_model=RevokedCountResponse)
async def logout_all(
    http_request: Request,
    response: Response,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    auth_service: AuthService = Depends(get_auth_service),
) -> RevokedCountResponse:
    """End every session of the current user, including this one."""
    revoked = await auth_service.logout_all(
        principal.user_id,
        ip_address=get_client_ip(http_request),
        user_agent=get_user_agent(http_request),
    )
    _clear_refresh_cookie(response)
    logger.info(
        f"User {principal.user_id} logged out of all sessions",
        extra={"user_id": str(principal.user_id)},
    )
    return RevokedCountResponse(message="Logged out of all sessions", revoked=revoked)


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user_info(
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    current_user: User = Depends(get_current_user),
) -> CurrentUserResponse:
    """Get the current user's information."""
    user = UserResponse.model_validate(current_user)
    return CurrentUserResponse(
        **user.model_dump(),
        permissions=sorted(principal.permissions),
        session_id=principal.session_id,
    )


@router.post("/change-password", response_model=RevokedCountResponse)
async def change_password(
    request: ChangePasswordRequest,
    http_request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
) -> RevokedCountResponse:
    """Change the current user's password.

    Every session of the user is ended; the user must log in again.
    """
    try:
        revoked = await auth_service.change_password(
            user=current_user,
            current_password=request.current_password,
            new_password=request.new_password,
            ip_address=get_client_ip(http_request),
            user_agent=get_user_agent(http_request),
        )
    except InvalidCredentialsError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Current password is incorrect",
        ) from e

    _clear_refresh_cookie(response)
    return RevokedCountResponse(message="Password changed successfully", revoked=revoked)
