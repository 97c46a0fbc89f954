"""Health check endpoints for Kubernetes liveness and readiness probes."""
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from creditledger.api.deps import get_container
from creditledger.container import Container
from creditledger.schemas.meter_event import QueueHealth

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> dict[str, str]:
    """
    Liveness probe.

    Does not check external dependencies.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": "0.1.0",
    }


@router.get("/health/ready")
async def readiness_check(container: Container = Depends(get_container)) -> JSONResponse:
    """
    Readiness probe: database and Redis must both answer.

    Returns 200 only if all critical dependencies are healthy.
    """
    checks = {"database": "unknown", "redis": "unknown"}
    ready = True

    try:
        async with container.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "connected"
    except Exception as exc:
        logger.error("database_health_check_failed", error=str(exc))
        checks["database"] = "disconnected"
        ready = False

    try:
        await container.redis.ping()
        checks["redis"] = "connected"
    except Exception as exc:
        logger.error("redis_health_check_failed", error=str(exc))
        checks["redis"] = "disconnected"
        ready = False

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "ready": ready,
            "checks": checks,
            "timestamp": datetime.utcnow().isoformat(),
        },
    )


@router.get("/health/queue")
async def queue_health(container: Container = Depends(get_container)) -> JSONResponse:
    """
    Meter event queue depth and worker liveness.

    Degraded (503) when the in-process worker is expected but not running.
    """
    stats = await container.queue.stats()
    worker = container.meter_worker
    worker_alive = worker is not None and worker.is_alive

    healthy = worker_alive or not container.settings.meter_worker_enabled
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=QueueHealth(
            status="healthy" if healthy else "degraded",
            worker_alive=worker_alive,
            live_mode=container.settings.is_live_mode,
            rate_limit=container.settings.meter_rate_limit,
            in_flight=worker.in_flight if worker is not None else 0,
            stats=stats,
        ).model_dump(),
    )
