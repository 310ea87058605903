"""Ultra BMS Auth - FastAPI Application Factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bms_auth.api import api_router
from bms_auth.api.auth import router as auth_router
from bms_auth.api.health import router as health_router
from bms_auth.core import async_session_maker, settings, setup_logging
from bms_auth.core.logging import get_logger
from bms_auth.middleware import SecurityHeadersMiddleware, SessionAuthMiddleware

# Import all models to ensure they're registered with Base for Alembic
from bms_auth.models import (  # noqa: F401
    AuditLog,
    SupersededAccessToken,
    TokenBlacklist,
    User,
    UserSession,
)
from bms_auth.services.cleanup import CleanupService
from bms_auth.services.session_guard import SessionGuard, get_session_guard

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    setup_logging(
        level=settings.log_level,
        format_type="structured" if not settings.debug else "dev",
    )
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    # Check security configuration (raises for unusable production settings)
    security_warnings = settings.check_security_configuration()
    for warning in security_warnings:
        logger.warning(f"SECURITY: {warning}")

    cleanup_service = CleanupService.get_instance()
    cleanup_service.configure(
        session_factory=app.state.session_factory,
        guard=app.state.session_guard,
    )
    await cleanup_service.start()

    yield

    # Shutdown
    logger.info("Shutting down...")
    await cleanup_service.stop()


def create_app(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    session_guard: SessionGuard | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Session and token authority for Ultra BMS",
        version=settings.app_version,
        lifespan=lifespan,
        # The docs endpoints are public; only serve them in debug mode
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.session_factory = session_factory or async_session_maker
    app.state.session_guard = session_guard or get_session_guard()

    # Session authentication: every non-public request needs a valid access
    # token bound to a live session
    app.add_middleware(SessionAuthMiddleware)

    # Security headers middleware
    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware - MUST be outermost (added last in Starlette LIFO order)
    # so that CORS headers are present on ALL responses, including 401 from SessionAuth.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "Accept",
            "X-Request-ID",
        ],
    )

    # Include routers
    app.include_router(health_router)  # Health at root level
    app.include_router(auth_router)  # Auth at root level (/auth)
    app.include_router(api_router)  # API at /api

    return app


# Application instance
app = create_app()
