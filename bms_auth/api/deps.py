"""Shared FastAPI dependencies for the auth API."""

import logging
from collections.abc import Callable, Coroutine
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from bms_auth.core import get_db
from bms_auth.models.user import User
from bms_auth.services.auth import AuthService
from bms_auth.services.errors import PermissionDeniedError
from bms_auth.services.permissions import Permission, PermissionResolver, get_permission_resolver
from bms_auth.services.session_guard import AuthenticatedPrincipal, SessionGuard, get_session_guard

logger = logging.getLogger(__name__)


def get_guard(request: Request) -> SessionGuard:
    """The app's SessionGuard (tests install one on app.state)."""
    return getattr(request.app.state, "session_guard", None) or get_session_guard()


def get_resolver() -> PermissionResolver:
    return get_permission_resolver()


def get_auth_service(
    db: AsyncSession = Depends(get_db),
    guard: SessionGuard = Depends(get_guard),
    resolver: PermissionResolver = Depends(get_resolver),
) -> AuthService:
    """Dependency to get auth service."""
    return AuthService(db, guard, resolver)


def get_current_principal(request: Request) -> AuthenticatedPrincipal:
    """Principal attached by SessionAuthMiddleware.

    Raises 401 when the route was reached without one, which only happens
    for routes mounted under a public path.
    """
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


async def get_current_user(
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    auth_service: AuthService = Depends(get_auth_service),
) -> User:
    """Dependency to load the current user row."""
    user = await auth_service.get_user_by_id(principal.user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_permission(
    *permissions: Permission | str,
) -> Callable[..., Coroutine[Any, Any, AuthenticatedPrincipal]]:
    """Dependency factory: the principal must hold any of ``permissions``.

    Checks the permission snapshot carried by the access token. Responds
    403 "Insufficient permissions" when the check fails; the missing
    permissions are only logged.
    """
    required = tuple(p.value if isinstance(p, Permission) else p for p in permissions)

    async def dependency(
        principal: AuthenticatedPrincipal = Depends(get_current_principal),
        resolver: PermissionResolver = Depends(get_resolver),
    ) -> AuthenticatedPrincipal:
        if resolver.granted(principal.role, principal.permissions, *required):
            return principal

        e = PermissionDeniedError(str(principal.user_id), " | ".join(required), required)
        logger.warning(
            str(e),
            extra={"user_id": str(principal.user_id), "session_id": principal.session_id},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions",
        ) from e

    return dependency
