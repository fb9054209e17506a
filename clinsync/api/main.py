"""Main FastAPI application for Clinical-Sync.

This module sets up the FastAPI application with all routes, middleware,
exception handlers and the connectivity monitor lifecycle.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clinsync import __version__
from clinsync.api.dependencies import get_container
from clinsync.api.logging_config import setup_logging
from clinsync.api.middleware import setup_middleware
from clinsync.api.routes import admin, auth, connectivity, export, health, patients
from clinsync.domain.ports import (
    AuthError,
    ClinicalSyncError,
    DuplicateKeyError,
    InvalidCredentials,
    InvalidTransitionError,
    NotAuthenticated,
    NotFoundError,
    PermissionDenied,
    StorageError,
    ValidationError,
)
from clinsync.infrastructure.settings import settings

logger = logging.getLogger(__name__)

# Domain errors mapped to HTTP status codes; the most specific class wins
ERROR_STATUS_CODES = (
    (ValidationError, 400),
    (DuplicateKeyError, 409),
    (NotFoundError, 404),
    (InvalidTransitionError, 409),
    (InvalidCredentials, 401),
    (NotAuthenticated, 401),
    (PermissionDenied, 403),
    (AuthError, 401),
    (StorageError, 500),
)


def status_code_for(exc: ClinicalSyncError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def clinical_sync_error_handler(request: Request, exc: ClinicalSyncError) -> JSONResponse:
    """Translate domain errors into JSON error responses.

    Security Impact:
        - Storage failures answer with a generic message; details stay in the logs
    """
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} - {type(exc).__name__}: {exc.message}")
        return JSONResponse(status_code=status_code, content={"error": "Internal server error"})

    content = {"error": exc.message}
    if isinstance(exc, ValidationError) and exc.details:
        content["details"] = exc.details
    elif isinstance(exc, (DuplicateKeyError, InvalidTransitionError)):
        content["details"] = exc.details
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the connectivity monitor and release resources on shutdown."""
    container = app.dependency_overrides.get(get_container, get_container)()
    logger.info(f"{settings.app_name} API starting up...")
    logger.info("API documentation available at /api/docs")
    await container.start()
    yield
    logger.info(f"{settings.app_name} API shutting down...")
    await container.shutdown()


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title="Clinical-Sync API",
        description="Clinical record entry with offline capture, REDCap sync and audit trail",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Process-Time", "Content-Disposition"],
    )
    setup_middleware(app)
    app.add_exception_handler(ClinicalSyncError, clinical_sync_error_handler)

    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(patients.router)
    app.include_router(export.router)
    app.include_router(admin.router)
    app.include_router(connectivity.router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": "Clinical-Sync API",
            "version": __version__,
            "docs": "/api/docs",
            "health": "/api/health"
        }

    return app


setup_logging(use_json=settings.json_logs, log_level=settings.log_level)

app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "clinsync.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level="info"
    )
