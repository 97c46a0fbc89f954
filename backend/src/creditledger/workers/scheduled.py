"""
Scheduled reconciliation jobs.

- Credits sync: every 5 minutes in production, every minute elsewhere
- Auto top-up: every 5 minutes
- Stale meter job recovery and queue pruning: hourly

Each job type runs at most once at a time, across processes (Redis lock)
and within one (asyncio.Lock).

Usage (with ARQ):
    arq creditledger.workers.scheduled.WorkerSettings
"""
import asyncio
from collections import defaultdict
from datetime import datetime

import structlog
from arq import cron
from arq.connections import RedisSettings

from creditledger.config import settings
from creditledger.container import Container
from creditledger.middleware.logging import setup_logging

logger = structlog.get_logger(__name__)

LOCK_TIMEOUT_SECONDS = 600


async def _run_exclusive(ctx: dict, job_name: str, fn) -> dict:  # noqa: ANN001
    """
    Run `fn` unless another run of the same job type holds the lock.

    Returns:
        Dict with the job result, or {"status": "skipped"} when locked out
    """
    local_lock = ctx.setdefault("job_locks", defaultdict(asyncio.Lock))[job_name]
    if local_lock.locked():
        logger.info("scheduled_job_skipped", job=job_name, reason="running_in_process")
        return {"status": "skipped"}

    async with local_lock:
        container: Container = ctx["container"]
        redis_lock = container.redis.lock(f"creditledger:lock:{job_name}", timeout=LOCK_TIMEOUT_SECONDS)
        if not await redis_lock.acquire(blocking=False):
            logger.info("scheduled_job_skipped", job=job_name, reason="locked")
            return {"status": "skipped"}

        started = datetime.utcnow()
        try:
            result = await fn(container)
        except Exception as e:
            logger.exception("scheduled_job_failed", job=job_name, exc_info=e)
            return {"status": "failed", "error": str(e)}
        finally:
            await redis_lock.release()

        duration = (datetime.utcnow() - started).total_seconds()
        logger.info("scheduled_job_completed", job=job_name, duration_seconds=duration)
        return {"status": "success", "result": result}


async def sync_credits(ctx: dict) -> dict:
    """Enqueue cumulative period credits for every active account."""

    async def _sync(container: Container) -> dict:
        result = await container.credits_sync.sync_all()
        return result.model_dump()

    return await _run_exclusive(ctx, "credits_sync", _sync)


async def process_auto_top_ups(ctx: dict) -> dict:
    """Top up accounts whose balance fell below their threshold."""

    async def _top_up(container: Container) -> dict:
        result = await container.auto_top_up.run()
        return result.model_dump()

    return await _run_exclusive(ctx, "auto_top_up", _top_up)


async def maintain_meter_queue(ctx: dict) -> dict:
    """Re-queue jobs stuck in ACTIVE and prune expired finished jobs."""

    async def _maintain(container: Container) -> dict:
        recovered = await container.queue.recover_stale_active()
        pruned = await container.queue.prune()
        stats = await container.queue.stats()
        return {"recovered": recovered, "pruned": pruned, "stats": stats.model_dump()}

    return await _run_exclusive(ctx, "meter_queue_maintenance", _maintain)


async def startup(ctx: dict) -> None:
    setup_logging()
    container = Container(settings)
    await container.startup()
    ctx["container"] = container
    ctx["job_locks"] = defaultdict(asyncio.Lock)
    logger.info("scheduled_worker_started", env=settings.app_env)


async def shutdown(ctx: dict) -> None:
    container: Container | None = ctx.get("container")
    if container is not None:
        await container.shutdown()
    logger.info("scheduled_worker_stopped")


def _sync_minutes() -> set[int]:
    step = 5 if settings.app_env == "production" else 1
    return set(range(0, 60, step))


class WorkerSettings:
    """
    ARQ worker settings for the scheduled jobs.

    Usage:
        arq creditledger.workers.scheduled.WorkerSettings
    """

    functions = [sync_credits, process_auto_top_ups, maintain_meter_queue]

    cron_jobs = [
        cron(sync_credits, minute=_sync_minutes(), unique=True, timeout=LOCK_TIMEOUT_SECONDS),
        cron(process_auto_top_ups, minute=set(range(0, 60, 5)), unique=True, timeout=LOCK_TIMEOUT_SECONDS),
        cron(maintain_meter_queue, minute={0}, unique=True, timeout=LOCK_TIMEOUT_SECONDS),
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = RedisSettings.from_dsn(str(settings.arq_redis_url))

    # Job retention
    keep_result = 3600

    max_jobs = 10
    job_timeout = LOCK_TIMEOUT_SECONDS
