"""Health check endpoint with database connectivity check.

Health endpoints are accessible without authentication.
"""

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel

from bms_auth.core import check_db_connection, settings
from bms_auth.core.database import get_session_factory
from bms_auth.services.cleanup import CleanupService

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    cleanup: str = "stopped"


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        status.HTTP_200_OK: {"description": "Service is healthy"},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Service is unhealthy"},
    },
)
async def health_check(request: Request, response: Response) -> HealthResponse:
    """
    Health check endpoint.

    Returns the service health status including database connectivity.
    Returns 503 if the database is unavailable.
    """
    db_healthy = await check_db_connection(get_session_factory(request))

    # Set appropriate status code for container orchestration
    if not db_healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status="healthy" if db_healthy else "unhealthy",
        version=settings.app_version,
        database="connected" if db_healthy else "disconnected",
        cleanup="running" if CleanupService.get_instance().is_running else "stopped",
    )
