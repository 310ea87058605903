"""Session management and permission API endpoints."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from bms_auth.api.deps import get_auth_service, get_current_principal, require_permission
from bms_auth.core.request_utils import get_client_ip, get_user_agent
from bms_auth.models.enums import AuditAction, BlacklistReason
from bms_auth.schemas.auth import MessageResponse, RevokedCountResponse
from bms_auth.schemas.session import (
    AuditEventListResponse,
    AuditEventResponse,
    PermissionsResponse,
    SessionListResponse,
    SessionResponse,
)
from bms_auth.services.auth import AuthService
from bms_auth.services.errors import SessionNotFoundError
from bms_auth.services.permissions import Permission
from bms_auth.services.session_guard import AuthenticatedPrincipal

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sessions"])


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    auth_service: AuthService = Depends(get_auth_service),
) -> SessionListResponse:
    """List the current user's active sessions."""
    sessions = await auth_service.store.list_active(principal.user_id, principal.session_id)
    items = [SessionResponse.model_validate(s) for s in sessions]
    return SessionListResponse(items=items, total=len(items))


@router.delete("/sessions/{session_id}", response_model=MessageResponse)
async def revoke_session(
    session_id: str,
    http_request: Request,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """End one of the current user's sessions.

    Returns 404 for sessions that do not exist, have already ended, or
    belong to another user.
    """
    try:
        await auth_service.revoke_session(
            principal,
            session_id,
            ip_address=get_client_ip(http_request),
            user_agent=get_user_agent(http_request),
        )
    except SessionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found",
        ) from e

    logger.info(
        f"User {principal.user_id} revoked session {session_id}",
        extra={"user_id": str(principal.user_id), "session_id": session_id},
    )
    return MessageResponse(message="Session revoked successfully")


@router.delete("/sessions", response_model=RevokedCountResponse)
async def revoke_other_sessions(
    http_request: Request,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    auth_service: AuthService = Depends(get_auth_service),
) -> RevokedCountResponse:
    """End every session of the current user except this one."""
    revoked = await auth_service.logout_all(
        principal.user_id,
        except_session_id=principal.session_id,
        action=AuditAction.SESSION_REVOKED,
        ip_address=get_client_ip(http_request),
        user_agent=get_user_agent(http_request),
        details={"kept_session_id": principal.session_id},
    )
    return RevokedCountResponse(message="Other sessions revoked", revoked=revoked)


@router.get("/permissions", response_model=PermissionsResponse)
async def get_permissions(
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
) -> PermissionsResponse:
    """Role and permissions carried by the current access token."""
    return PermissionsResponse(
        user_id=str(principal.user_id),
        role=principal.role,
        permissions=sorted(principal.permissions),
    )


@router.delete("/users/{user_id}/sessions", response_model=RevokedCountResponse)
async def force_logout_user(
    user_id: UUID,
    http_request: Request,
    principal: AuthenticatedPrincipal = Depends(require_permission(Permission.USER_MANAGE_ALL)),
    auth_service: AuthService = Depends(get_auth_service),
) -> RevokedCountResponse:
    """End every session of another user (administrative force logout)."""
    user = await auth_service.get_user_by_id(user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )

    revoked = await auth_service.logout_all(
        user_id,
        BlacklistReason.SECURITY_VIOLATION,
        action=AuditAction.FORCED_LOGOUT,
        ip_address=get_client_ip(http_request),
        user_agent=get_user_agent(http_request),
        details={"actor_id": str(principal.user_id)},
    )
    logger.warning(
        f"User {principal.user_id} force-logged-out user {user_id} ({revoked} sessions)",
        extra={"user_id": str(user_id), "reason": BlacklistReason.SECURITY_VIOLATION.value},
    )
    return RevokedCountResponse(message="User sessions revoked", revoked=revoked)


@router.get("/users/{user_id}/audit", response_model=AuditEventListResponse)
async def list_user_audit_events(
    user_id: UUID,
    limit: int = Query(default=50, ge=1, le=500),
    principal: AuthenticatedPrincipal = Depends(require_permission(Permission.USER_MANAGE_ALL)),
    auth_service: AuthService = Depends(get_auth_service),
) -> AuditEventListResponse:
    """Recent authentication events of a user, newest first."""
    events = await auth_service.audit.list_for_user(user_id, limit=limit)
    items = [AuditEventResponse.model_validate(event) for event in events]
    return AuditEventListResponse(items=items, total=len(items))
