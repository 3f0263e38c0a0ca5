"""Health check endpoints for load balancers and monitoring."""

from datetime import datetime, timezone

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from agritrace.config import settings
from agritrace.database import engine
from agritrace.utils.cache import get_redis

router = APIRouter(tags=["health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health_check():
    """Lightweight liveness check (no DB/Redis round-trip)."""
    return {
        "status": "ok",
        "service": "AgriTrace",
        "timestamp": _now(),
        "environment": settings.environment,
    }


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: database always, Redis only when caching is enabled.

    Returns 503 if a required dependency is unreachable.
    """
    checks = {"service": "ok", "database": "unknown", "redis": "disabled"}
    healthy = True

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {str(e)[:100]}"
        healthy = False

    if settings.cache_enabled:
        try:
            client = await get_redis()
            await client.ping()
            checks["redis"] = "ok"
        except Exception as e:
            # Redis is optional: the cache falls back to uncached reads
            checks["redis"] = f"error: {str(e)[:100]}"

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "service": "AgriTrace",
            "checks": checks,
            "timestamp": _now(),
        },
    )
