"""
Health endpoints for load balancers and monitoring.

GET /health        liveness, 200 whenever the process serves requests
GET /health/ready  database and Redis reachability plus engine worker heartbeats
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.database import get_db
from leadflow.utils import dedup

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

APP_VERSION = "1.0.0"
ENGINE_WORKERS = ("sequence_scheduler", "clock_tick")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": _now_iso(), "version": APP_VERSION}


async def _database_ok(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))
        return False


async def _redis_and_workers() -> tuple[bool, dict]:
    try:
        redis = await dedup.get_redis()
        await redis.ping()
        workers = {}
        for name in ENGINE_WORKERS:
            last = await redis.get(dedup.HEARTBEAT_KEY.format(name=name))
            workers[name] = {"healthy": last is not None, "last_heartbeat": last}
        return True, workers
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))
        return False, {}


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Ready when the database and Redis answer. Stale heartbeats are reported, not fatal."""
    redis_ok, workers = await _redis_and_workers()
    checks = {"database": await _database_ok(db), "redis": redis_ok}
    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "workers": workers,
        "timestamp": _now_iso(),
    }
