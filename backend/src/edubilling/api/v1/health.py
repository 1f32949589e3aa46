"""Health check endpoints for liveness and readiness probes."""
import structlog
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from redis import asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from edubilling.config import settings
from edubilling.database import engine
from edubilling.utils.dates import utcnow

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health", status_code=status.HTTP_200_OK, tags=["Health"])
async def health_check() -> dict[str, str]:
    """
    Liveness probe.

    Returns basic health status if the process is running. Does not check
    external dependencies.
    """
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": "0.1.0",
    }


@router.get("/health/ready", tags=["Health"])
async def readiness_check() -> JSONResponse:
    """
    Readiness probe.

    Checks database connectivity, and Redis when it backs the product cache.
    Returns 200 only if every checked dependency is healthy.
    """
    checks = {"database": "unknown"}
    ready = True

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "connected"
    except (SQLAlchemyError, OSError) as exc:
        logger.error("database_health_check_failed", error=str(exc))
        checks["database"] = "disconnected"
        ready = False

    if settings.product_cache_backend == "redis":
        try:
            redis_client = aioredis.from_url(str(settings.redis_url), encoding="utf-8", decode_responses=True)
            await redis_client.ping()
            await redis_client.aclose()
            checks["redis"] = "connected"
        except (aioredis.RedisError, OSError) as exc:
            logger.error("redis_health_check_failed", error=str(exc))
            checks["redis"] = "disconnected"
            ready = False

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"ready": ready, "checks": checks, "timestamp": utcnow().isoformat()},
    )
