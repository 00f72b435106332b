"""
Main FastAPI application entry point.
"""

import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from flowguard.api import health
from flowguard.authz.routes import router as authz_router
from flowguard.cache.service import create_cache_service
from flowguard.core.config import Settings, get_settings
from flowguard.core.database import close_db, init_db, setup_database
from flowguard.core.exceptions import FlowguardError
from flowguard.core.logging import configure_logging

logger = structlog.get_logger(__name__)


def _error_response(request: Request, status_code: int, error: dict, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
            "meta": {
                "request_id": getattr(request.state, "request_id", None),
            },
        },
        headers=headers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    settings: Settings = app.state.settings

    # Startup
    logger.info("Starting application", version=settings.app.version, env=settings.app.env)

    setup_database(settings.database, echo=settings.app.debug)
    if settings.database.auto_create:
        await init_db()
        logger.info("Database tables verified via init_db")

    app.state.cache = await create_cache_service(settings)

    app.state.http_client = None
    if settings.auth.token_enabled and settings.auth.token_userinfo_url:
        app.state.http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.auth.token_timeout))

    # Log important configuration
    logger.info(
        "Configuration loaded",
        app_name=settings.app.name,
        shared_cache=app.state.cache.shared_enabled,
        token_auth=settings.auth.token_enabled,
        api_key_auth=settings.auth.api_key_enabled,
        basic_auth=settings.auth.basic_enabled,
    )

    yield

    # Shutdown
    logger.info("Shutting down application")

    if app.state.http_client is not None:
        await app.state.http_client.aclose()
    await app.state.cache.close()
    await close_db()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application for the given (or environment) settings."""
    settings = settings or get_settings()
    configure_logging(settings.log)

    app = FastAPI(
        title=settings.app.name,
        version=settings.app.version,
        description="Flowguard - multi-tenant authorization engine",
        docs_url="/docs" if settings.docs_enabled else None,
        redoc_url="/redoc" if settings.docs_enabled else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # ========================================================================
    # Middleware
    # ========================================================================

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests and add request ID."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        if settings.log.requests:
            logger.info(
                "Request started",
                method=request.method,
                path=request.url.path,
                request_id=request_id,
            )

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                duration_ms=round(duration * 1000, 2),
                request_id=request_id,
            )
            raise

        response.headers["X-Request-ID"] = request_id
        if settings.log.requests:
            duration = time.time() - start_time
            logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
                request_id=request_id,
            )
        return response

    # ========================================================================
    # Exception Handlers
    # ========================================================================

    @app.exception_handler(FlowguardError)
    async def flowguard_exception_handler(request: Request, exc: FlowguardError):
        """Handle engine errors."""
        if exc.status_code >= 500:
            logger.error("Request hit a backend failure", path=request.url.path, error=exc.message)
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        return _error_response(request, exc.status_code, exc.to_dict(), headers=headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions."""
        if isinstance(exc.detail, dict):
            error = dict(exc.detail)
        else:
            error = {"code": exc.status_code, "message": exc.detail}
        return _error_response(request, exc.status_code, error, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle validation errors."""
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append({
                "field": field,
                "message": error["msg"],
                "type": error["type"],
            })

        return _error_response(
            request,
            422,
            {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": errors,
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions."""
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            error=str(exc),
            exc_info=exc,
        )
        return _error_response(
            request,
            500,
            {
                "code": "INTERNAL_ERROR",
                "message": "An internal error occurred" if not settings.app.debug else str(exc),
            },
        )

    # ========================================================================
    # Routes
    # ========================================================================

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(authz_router, prefix="/api/v1")

    return app
