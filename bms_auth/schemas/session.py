"""Pydantic schemas for session management, permissions and audit events."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from bms_auth.models.enums import AuditAction


class SessionResponse(BaseModel):
    """One active login session."""

    model_config = ConfigDict(from_attributes=True)

    session_id: str
    device_type: str
    browser: str
    ip_address: str | None
    created_at: datetime
    last_activity_at: datetime
    is_current: bool = Field(description="True for the session making this request")


class SessionListResponse(BaseModel):
    """Active sessions, most recently used first."""

    items: list[SessionResponse]
    total: int


class PermissionsResponse(BaseModel):
    """Role and permission snapshot of the current token."""

    user_id: str
    role: str
    permissions: list[str]


class AuditEventResponse(BaseModel):
    """One recorded authentication event."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID | None
    action: AuditAction
    ip_address: str | None
    user_agent: str | None
    details: dict[str, Any] | None
    created_at: datetime


class AuditEventListResponse(BaseModel):
    items: list[AuditEventResponse]
    total: int
