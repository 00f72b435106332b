"""
Health check and system status endpoints.
"""

import structlog
from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from flowguard.authz.schemas import HealthResponse
from flowguard.core.dependencies import CacheDep, DbSessionDep, SettingsDep

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/healthz", response_model=HealthResponse)
async def health_check(settings: SettingsDep):
    """
    Basic health check endpoint.

    Returns the service status without checking dependencies.
    """
    return HealthResponse(status="healthy", version=settings.app.version)


@router.get("/health", response_model=HealthResponse)
async def health_detailed(settings: SettingsDep, db: DbSessionDep, cache: CacheDep):
    """
    Detailed health check with dependency status.

    The cache reports "local-only" when the shared tier is disabled or was
    unreachable at startup; that is a supported mode, not a failure.
    """
    db_status = "unhealthy"
    try:
        await db.execute(text("SELECT 1"))
        db_status = "healthy"
    except SQLAlchemyError as exc:
        logger.error("Database health check failed", error=str(exc))

    if cache is None:
        cache_status = "unavailable"
    elif cache.shared_enabled:
        cache_status = "healthy"
    else:
        cache_status = "local-only"

    overall_status = "healthy" if db_status == "healthy" and cache is not None else "degraded"

    return HealthResponse(
        status=overall_status,
        version=settings.app.version,
        database=db_status,
        cache=cache_status,
    )
