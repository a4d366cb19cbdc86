"""
Glass - FastAPI Application
===========================

Main application factory with routers, exception mapping and lifespan.
"""

from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import AsyncGenerator

import structlog
from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from glass.api import issues
from glass.api.deps import close_workflow_service, get_workflow_service
from glass.core.config import settings
from glass.core.database import close_db, engine, init_db
from glass.core.errors import (
    AgentError,
    GlassError,
    InvalidTransitionError,
    IssueNotFoundError,
    PhaseConflictError,
    SourceError,
    StorageError,
    WorkspaceError,
)
from glass.core.schemas import ErrorResponse, HealthResponse
from glass.core.workflow.service import WorkflowService

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


# Most specific class first
ERROR_STATUS = [
    (IssueNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (PhaseConflictError, status.HTTP_409_CONFLICT),
    (AgentError, status.HTTP_502_BAD_GATEWAY),
    (SourceError, status.HTTP_502_BAD_GATEWAY),
    (StorageError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (WorkspaceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_for(exc: GlassError) -> int:
    for error_class, status_code in ERROR_STATUS:
        if isinstance(exc, error_class):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Initialize database
    - Fail issues whose agent sessions did not survive the restart
    - Start the periodic refresh loop (if configured)

    Shutdown:
    - Cancel agent runs and dispose every session
    - Close database connections
    """
    logger.info("Starting Glass", version=settings.APP_VERSION, project=settings.PROJECT_PATH)

    await init_db()
    logger.info("Database initialized")

    service = get_workflow_service()
    recovered = await service.recover_orphaned_sessions()
    if recovered:
        logger.warning("Recovered orphaned sessions", count=recovered)
    service.start_refresh_loop(settings.REFRESH_INTERVAL_SECONDS)

    yield

    logger.info("Shutting down Glass")
    await close_workflow_service()
    await close_db()
    logger.info("Database connections closed")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Glass - Sentry issue triage and remediation with coding agents",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(GlassError)
    async def glass_exception_handler(request: Request, exc: GlassError) -> JSONResponse:
        """Map domain errors to status codes."""
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(
                "Request failed",
                code=exc.code,
                error=exc.message,
                path=request.url.path,
                method=request.method,
            )
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=HTTPStatus(status_code).phrase,
                detail=exc.message,
                code=exc.code,
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    @app.get(
        f"{settings.API_V1_PREFIX}/health",
        response_model=HealthResponse,
        include_in_schema=False,
    )
    async def health_check(
        service: WorkflowService = Depends(get_workflow_service),
    ) -> HealthResponse:
        """Check application and database health."""
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            database = "connected"
        except SQLAlchemyError as e:
            logger.warning("Health check database failure", error=str(e))
            database = "unavailable"

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
            active_sessions=len(service.orchestrator),
        )

    app.include_router(issues.router, prefix=settings.API_V1_PREFIX)

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "api": settings.API_V1_PREFIX,
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

def run() -> None:
    """Serve the API with uvicorn on the configured host and port."""
    import uvicorn

    uvicorn.run(
        "glass.api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.is_development,
        log_level="info",
    )


if __name__ == "__main__":
    run()
