"""
Health check endpoints - used by load balancers and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis + worker heartbeats)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from gearhook.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

WORKERS = ("stale_event_sweeper", "delayed_job_runner")


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "1.0.0",
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity.
    Worker heartbeats are reported but do not affect readiness.
    """
    checks = {"database": False, "redis": False}
    workers = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    try:
        from gearhook.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
        for name in WORKERS:
            workers[name] = await redis.get(f"gearhook:worker_health:{name}")
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    all_healthy = all(checks.values())
    return {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
        "workers": workers,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
