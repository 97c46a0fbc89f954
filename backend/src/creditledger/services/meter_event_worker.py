"""Meter event worker: drains the meter event queue into the metering provider.

The rate limit follows the Stripe key mode (live: 1000 events/s, test:
10 events/s) and is shared through Redis by every worker process using
the same key mode. In-flight provider calls per process never exceed
min(rate, 50).
"""
import asyncio
import math

import structlog
from redis import asyncio as aioredis

from creditledger import metrics
from creditledger.adapters.interfaces import MeteringProvider
from creditledger.config import Settings, settings as default_settings
from creditledger.exceptions import (
    ProviderIdempotencyConflict,
    ProviderPermanentError,
    ProviderRateLimitedError,
    ProviderTransientError,
)
from creditledger.models.meter_event_job import MeterEventJob, MeterEventOutcome
from creditledger.services.meter_event_queue import MeterEventHandler, MeterEventQueue, job_id_for
from creditledger.tracing import get_tracer
from creditledger.utils.rate_limiter import SlidingWindowRateLimiter

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)


class ProviderDeliveryHandler(MeterEventHandler):
    """Submits a job to the metering provider."""

    def __init__(self, provider: MeteringProvider):
        self.provider = provider

    async def handle(self, job: MeterEventJob) -> None:
        with tracer.start_as_current_span("meter_event.submit") as span:
            span.set_attribute("meter_event.name", job.event_name)
            span.set_attribute("meter_event.attempt", job.attempt)
            await self.provider.submit_event(
                event_name=job.event_name,
                external_customer_id=job.external_customer_id,
                value=math.floor(job.value),
                timestamp=job.event_timestamp,
                idempotency_key=job.idempotency_key,
            )


class MeterEventWorker:
    """
    Claims due jobs and delivers them under a rate limit and a concurrency cap.

    Failure handling:
    - rate limited / transient: retried with exponential backoff, then failed
    - idempotency conflict: completed as a duplicate
    - permanent: failed immediately
    """

    def __init__(
        self,
        queue: MeterEventQueue,
        handler: MeterEventHandler,
        redis: aioredis.Redis,
        settings: Settings = default_settings,
        rate_limit: int | None = None,
        poll_interval: float | None = None,
    ):
        """
        Initialize worker.

        Args:
            queue: Queue to drain
            handler: Delivers one job
            redis: Holds the rate window shared by every worker process
            settings: Application settings
            rate_limit: Events per second (defaults to the mode's limit)
            poll_interval: Idle sleep between claims
        """
        self.queue = queue
        self.handler = handler
        self.rate_limit = rate_limit or settings.meter_rate_limit
        self.concurrency = min(self.rate_limit, settings.meter_max_concurrency)
        self.poll_interval = poll_interval if poll_interval is not None else settings.meter_poll_interval_seconds
        self.limiter = SlidingWindowRateLimiter(
            redis, settings.meter_rate_limit_key, self.rate_limit, window_seconds=1.0
        )
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._in_flight: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def is_alive(self) -> bool:
        """True while the claim loop is running."""
        return self._task is not None and not self._task.done() and not self._stopping.is_set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self) -> None:
        """Start the claim loop in the background."""
        if self._task is not None and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="meter-event-worker")
        logger.info("meter_worker_started", rate_limit=self.rate_limit, concurrency=self.concurrency)

    async def shutdown(self) -> None:
        """
        Stop claiming and wait for in-flight deliveries to finish.

        A provider call is never abandoned midway.
        """
        self._stopping.set()
        if self._task is not None:
            await self._task
        if self._in_flight:
            logger.info("meter_worker_draining", in_flight=len(self._in_flight))
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.info("meter_worker_stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            capacity = self.concurrency - len(self._in_flight)
            if capacity <= 0:
                await asyncio.wait(self._in_flight, return_when=asyncio.FIRST_COMPLETED)
                continue

            try:
                jobs = await self.queue.claim_due(capacity)
            except Exception:
                logger.exception("meter_worker_claim_failed")
                jobs = []

            for job in jobs:
                task = asyncio.create_task(self._process(job))
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)

            if not jobs:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def _process(self, job: MeterEventJob) -> None:
        async with self._semaphore:
            try:
                await self.limiter.acquire()
            except Exception as e:
                logger.exception("meter_rate_limiter_unavailable", job_id=job_id_for(job))
                await self.queue.mark_retry(job, f"Rate limiter unavailable: {e}", reason="rate_limiter")
                return
            metrics.meter_worker_in_flight.inc()
            try:
                await self._deliver(job)
            except Exception:
                # Bookkeeping failed; the job stays ACTIVE until stale recovery re-queues it
                logger.exception("meter_event_bookkeeping_failed", job_id=job_id_for(job))
            finally:
                metrics.meter_worker_in_flight.dec()

    async def _deliver(self, job: MeterEventJob) -> None:
        try:
            await self.handler.handle(job)
        except ProviderIdempotencyConflict:
            logger.info("meter_event_already_delivered", job_id=job_id_for(job))
            await self.queue.mark_completed(job, MeterEventOutcome.DUPLICATE)
        except ProviderRateLimitedError as e:
            logger.warning("meter_event_rate_limited", job_id=job_id_for(job), attempt=job.attempt)
            await self.queue.mark_retry(job, str(e), reason="rate_limited")
        except ProviderTransientError as e:
            logger.warning("meter_event_transient_error", job_id=job_id_for(job), attempt=job.attempt, error=str(e))
            await self.queue.mark_retry(job, str(e), reason="transient")
        except ProviderPermanentError as e:
            await self.queue.mark_failed(job, str(e), reason="permanent")
        except Exception as e:
            logger.exception("meter_event_unexpected_error", job_id=job_id_for(job))
            await self.queue.mark_retry(job, f"Unexpected error: {e}", reason="unexpected")
        else:
            await self.queue.mark_completed(job, MeterEventOutcome.DELIVERED)
