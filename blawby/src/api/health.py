"""
Health check endpoints - used by load balancers, Docker healthcheck, and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis)
- GET /health/queue - job queue and outbox backlog
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text, select, func
from src.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


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
    Redis only carries wake-up notifications, so it degrades rather than fails.
    """
    checks = {"database": False, "redis": False}

    # Check database
    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    # Check Redis
    try:
        from src.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    if all(checks.values()):
        status = "ready"
    elif checks["database"]:
        status = "degraded"
    else:
        status = "unavailable"
    return {
        "status": status,
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/queue")
async def queue_health(
    db: AsyncSession = Depends(get_db),
):
    """Job counts per task plus unprocessed webhook and outbox backlogs."""
    from src.models.domain_event import DomainEvent
    from src.schemas.api_responses import QueueCounts, QueueHealthResponse
    from src.services.job_queue import TASK_NAMES, get_queue_stats
    from src.services.webhook_store import count_unprocessed

    try:
        queues = {name: QueueCounts(**await get_queue_stats(name)) for name in TASK_NAMES}
        unprocessed_webhooks = await count_unprocessed(db)
        result = await db.execute(
            select(func.count()).select_from(DomainEvent).where(DomainEvent.processed.is_(False))
        )
        unprocessed_events = int(result.scalar() or 0)
    except Exception as e:
        logger.error("Queue health check failed: %s", str(e))
        return QueueHealthResponse(status="unavailable", queues={}, error=str(e))

    failed = sum(q.failed for q in queues.values())
    return QueueHealthResponse(
        status="degraded" if failed else "healthy",
        queues=queues,
        unprocessed_webhooks=unprocessed_webhooks,
        unprocessed_events=unprocessed_events,
    )
