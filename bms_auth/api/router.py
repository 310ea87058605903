"""Ultra BMS Auth API Router - aggregates all API routes."""

from fastapi import APIRouter

from bms_auth.api import sessions

# Main API router - all routes will be prefixed with /api
api_router = APIRouter(prefix="/api")

# Include routers
api_router.include_router(sessions.router)
