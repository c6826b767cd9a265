"""FastAPI application for MemeSync server.

This module creates and configures the FastAPI application with:
- REST API for device registration, sync, shares, quota and blobs
- Envelope-shaped error responses for every failure
- Maintenance scheduler (daily consistency audit)

Usage:
    uvicorn memesync.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from memesync import __version__
from memesync.server.api.router import router as api_router
from memesync.server.config import ServerSettings
from memesync.server.database import Database
from memesync.server.errors import AuthError, MemeSyncError
from memesync.server.quota import QuotaEvaluator, RateCounter, create_rate_counter
from memesync.server.scheduler import MaintenanceScheduler
from memesync.server.schemas import fail
from memesync.server.storage import ObjectStorage, create_storage
from memesync.server.tokens import TokenService

logger = logging.getLogger(__name__)


def setup_logging(log_path: Path) -> None:
    """Configure logging to output to both file and stdout.

    Args:
        log_path: Path to the log file.
    """
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(log_format)

    # Root logger for memesync
    root_logger = logging.getLogger("memesync")
    root_logger.setLevel(logging.INFO)

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    # File handler
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Also capture uvicorn logs to file
    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(uvicorn_name)
        uvicorn_logger.addHandler(file_handler)


def install_error_handlers(application: FastAPI) -> None:
    """Render every error as ``{"success": false, "error": ...}``."""

    @application.exception_handler(MemeSyncError)
    async def handle_memesync_error(request: Request, exc: MemeSyncError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthError) else None
        return JSONResponse(status_code=exc.status_code, content=fail(exc.message), headers=headers)

    @application.exception_handler(RequestValidationError)
    async def handle_validation_error(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.debug("Invalid request to %s: %s", request.url.path, exc.errors())
        return JSONResponse(status_code=400, content=fail("Invalid request body"))

    @application.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=fail(str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @application.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=fail("Internal server error"))


def create_app(
    db: Database,
    storage: ObjectStorage,
    settings: ServerSettings | None = None,
    counter: RateCounter | None = None,
) -> FastAPI:
    """Create FastAPI application with custom database and storage.

    This is primarily used for testing with isolated databases.

    Args:
        db: Database instance.
        storage: Object storage instance.
        settings: Static settings (default: ServerSettings()).
        counter: Rate counter store; None disables per-IP limits.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or ServerSettings()
    quota = QuotaEvaluator(db, settings.limits, counter)
    scheduler = MaintenanceScheduler(
        db,
        storage,
        audit_enabled=settings.audit_enabled,
        hour=settings.audit_hour,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        # Startup
        db_path = getattr(db, "_db_path", "in-memory")
        logger.info("=" * 60)
        logger.info("MemeSync Server Starting")
        logger.info("=" * 60)
        logger.info("  Database:   %s", db_path)
        logger.info("  Storage:    %s", storage.location)
        logger.info("  Rate limit: %s", settings.rate_limit if counter else "off")
        logger.info("  Logs:       %s", settings.log_path.absolute())
        logger.info("=" * 60)
        scheduler.start()

        yield

        # Shutdown
        scheduler.stop()
        logger.info("MemeSync Server shutting down")

    application = FastAPI(
        title="MemeSync Server",
        description="Multi-device meme library sync and sharing server",
        version=__version__,
        lifespan=lifespan,
    )

    application.state.db = db
    application.state.storage = storage
    application.state.settings = settings
    application.state.tokens = TokenService(
        settings.jwt_secret, ttl=timedelta(days=settings.token_ttl_days)
    )
    application.state.quota = quota
    application.state.scheduler = scheduler

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    install_error_handlers(application)
    application.include_router(api_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    settings = ServerSettings.from_env()
    setup_logging(settings.log_path)
    return create_app(
        db=Database(settings.db_path),
        storage=create_storage(settings.storage),
        settings=settings,
        counter=create_rate_counter(settings.rate_limit, settings.redis_url),
    )
