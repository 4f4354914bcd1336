"""
Health check endpoint with infrastructure checks.
"""

import time

import redis.asyncio as redis
import structlog
from fastapi import APIRouter, Depends

from src.api.dependencies import get_database, get_redis_client
from src.api.models import ComponentHealth, HealthResponse
from src.governance.repository import EpochRepository
from src.scoring.config import ScoringConfig
from src.storage.database import Database

router = APIRouter()
logger = structlog.get_logger(__name__)


async def _check_database(db: Database) -> ComponentHealth:
    """Check database connectivity and measure latency."""
    start = time.perf_counter()
    try:
        healthy = await db.health_check()
        latency_ms = (time.perf_counter() - start) * 1000
        return ComponentHealth(
            status="healthy" if healthy else "unhealthy",
            latency_ms=round(latency_ms, 2),
        )
    except Exception as e:
        latency_ms = (time.perf_counter() - start) * 1000
        return ComponentHealth(
            status="unhealthy",
            latency_ms=round(latency_ms, 2),
            details={"error": str(e)},
        )


async def _check_redis(redis_client: redis.Redis) -> ComponentHealth:
    """Check Redis connectivity and measure latency."""
    start = time.perf_counter()
    try:
        await redis_client.ping()
        latency_ms = (time.perf_counter() - start) * 1000
        return ComponentHealth(
            status="healthy",
            latency_ms=round(latency_ms, 2),
        )
    except Exception as e:
        latency_ms = (time.perf_counter() - start) * 1000
        return ComponentHealth(
            status="unhealthy",
            latency_ms=round(latency_ms, 2),
            details={"error": str(e)},
        )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
    description="Check the health of the service and its dependencies.",
)
async def health_check(
    db: Database = Depends(get_database),
    redis_client: redis.Redis = Depends(get_redis_client),
) -> HealthResponse:
    """
    Check service health.

    Status logic:
    - unhealthy: database is down
    - degraded: Redis is down (feed serves empty pages) or no epoch exists
    - healthy: all components operational
    """
    components = {
        "database": await _check_database(db),
        "redis": await _check_redis(redis_client),
    }

    epoch_id = None
    if components["database"].status == "healthy":
        try:
            epoch = await EpochRepository(db).get_current()
            epoch_id = epoch.id if epoch is not None else None
        except Exception as e:
            logger.warning("Health check could not read current epoch", error=str(e))

    feed_updated_at = None
    if components["redis"].status == "healthy":
        try:
            feed_updated_at = await redis_client.get(ScoringConfig().feed_updated_at_key)
        except Exception as e:
            logger.warning("Health check could not read feed timestamp", error=str(e))

    if components["database"].status == "unhealthy":
        status = "unhealthy"
    elif components["redis"].status == "unhealthy" or epoch_id is None:
        status = "degraded"
    else:
        status = "healthy"

    return HealthResponse(
        status=status,
        components=components,
        current_epoch_id=epoch_id,
        feed_updated_at=feed_updated_at,
        version="0.1.0",
    )
