"""Durable queue of meter events awaiting delivery to the metering provider."""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditledger import metrics
from creditledger.config import Settings, settings as default_settings
from creditledger.models.meter_event_job import MeterEventJob, MeterEventJobStatus, MeterEventOutcome
from creditledger.schemas.meter_event import MeterEventCreate, QueueStats

logger = structlog.get_logger(__name__)

# Concurrent producers racing on one idempotency key converge after a re-read
ENQUEUE_MAX_ATTEMPTS = 3


def job_id_for(job: MeterEventJob) -> str:
    """Keyed jobs are addressed by their idempotency key."""
    return job.idempotency_key or str(job.id)


class MeterEventHandler(ABC):
    """Delivers one claimed job. Raises ProviderError subclasses on failure."""

    @abstractmethod
    async def handle(self, job: MeterEventJob) -> None:
        """Deliver the job."""


class MeterEventQueue:
    """
    Database-backed meter event queue.

    Many producers enqueue; workers claim due jobs with a status-guarded
    UPDATE so a job is never delivered by two workers at once. Retries are
    spaced with exponential backoff: base_delay * 2 ** (attempt - 1).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings = default_settings,
    ):
        """Initialize queue with a session factory and settings."""
        self.session_factory = session_factory
        self.settings = settings
        self.max_attempts = settings.meter_max_attempts
        self.backoff_base_seconds = settings.meter_backoff_base_seconds

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before the next try after `attempt` failed attempts."""
        return self.backoff_base_seconds * 2 ** (max(attempt, 1) - 1)

    async def enqueue(
        self,
        event_name: str,
        external_customer_id: str,
        value: int,
        timestamp: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> str | None:
        """
        Queue one meter event.

        Args:
            event_name: Provider meter event name
            external_customer_id: Provider customer ID
            value: Whole units; values <= 0 are ignored
            timestamp: When the usage happened
            idempotency_key: Key that makes re-enqueueing a no-op or an update

        Returns:
            Job ID (the idempotency key when one is given), or None if skipped
        """
        job_ids = await self.enqueue_batch(
            [
                MeterEventCreate(
                    event_name=event_name,
                    external_customer_id=external_customer_id,
                    value=value,
                    timestamp=timestamp,
                    idempotency_key=idempotency_key,
                )
            ]
        )
        return job_ids[0] if job_ids else None

    async def enqueue_batch(self, events: list[MeterEventCreate]) -> list[str]:
        """
        Queue several meter events in one transaction.

        A key that already has a waiting job updates that job's value and
        timestamp; a key whose job is active or finished is left alone.

        Returns:
            Job IDs of the accepted events, in input order
        """
        accepted = [event for event in events if event.value > 0]
        for event in events:
            if event.value <= 0:
                logger.debug("meter_event_skipped", event_name=event.event_name, value=event.value)

        if not accepted:
            return []

        for attempt in range(1, ENQUEUE_MAX_ATTEMPTS + 1):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        return await self._enqueue_in_session(session, accepted)
            except IntegrityError:
                # Another producer inserted one of the keys first; the re-read will find it
                if attempt == ENQUEUE_MAX_ATTEMPTS:
                    raise
                logger.info("meter_event_enqueue_conflict", attempt=attempt)

        return []

    async def _enqueue_in_session(self, session: AsyncSession, events: list[MeterEventCreate]) -> list[str]:
        now = datetime.utcnow()
        keys = {event.idempotency_key for event in events if event.idempotency_key}

        existing: dict[str, MeterEventJob] = {}
        if keys:
            result = await session.execute(select(MeterEventJob).where(MeterEventJob.idempotency_key.in_(keys)))
            existing = {job.idempotency_key: job for job in result.scalars().all()}

        job_ids = []
        new_jobs = []
        for event in events:
            key = event.idempotency_key
            if key and key in existing:
                job = existing[key]
                if job in new_jobs:
                    job.value = event.value
                    job.event_timestamp = event.timestamp
                    job_ids.append(key)
                    continue
                await session.execute(
                    update(MeterEventJob)
                    .where(and_(MeterEventJob.id == job.id, MeterEventJob.status == MeterEventJobStatus.WAITING))
                    .values(value=event.value, event_timestamp=event.timestamp, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                metrics.meter_events_deduplicated_total.labels(event_name=event.event_name).inc()
                logger.debug("meter_event_deduplicated", job_id=key, status=job.status.value)
                job_ids.append(key)
                continue

            job = MeterEventJob(
                id=uuid4(),
                event_name=event.event_name,
                external_customer_id=event.external_customer_id,
                value=event.value,
                event_timestamp=event.timestamp,
                idempotency_key=key,
                status=MeterEventJobStatus.WAITING,
                attempt=0,
                max_attempts=self.max_attempts,
                run_at=now,
            )
            session.add(job)
            new_jobs.append(job)
            if key:
                existing[key] = job
            job_ids.append(job_id_for(job))

        await session.flush()

        for job in new_jobs:
            metrics.meter_events_enqueued_total.labels(event_name=job.event_name).inc()

        logger.info("meter_events_enqueued", count=len(new_jobs), deduplicated=len(job_ids) - len(new_jobs))
        return job_ids

    async def get_job(self, job_id: str) -> MeterEventJob | None:
        """Look up a job by idempotency key or UUID."""
        condition = MeterEventJob.idempotency_key == job_id
        try:
            condition = or_(condition, MeterEventJob.id == UUID(job_id))
        except ValueError:
            pass

        async with self.session_factory() as session:
            result = await session.execute(select(MeterEventJob).where(condition))
            return result.scalars().first()

    async def claim_due(self, limit: int, now: datetime | None = None) -> list[MeterEventJob]:
        """
        Move up to `limit` due jobs to ACTIVE and return them.

        Each claim is an UPDATE guarded on status, so two workers never
        claim the same job.
        """
        if limit <= 0:
            return []
        now = now or datetime.utcnow()

        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(MeterEventJob.id)
                    .where(and_(MeterEventJob.status == MeterEventJobStatus.WAITING, MeterEventJob.run_at <= now))
                    .order_by(MeterEventJob.run_at)
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                )
                candidate_ids = list(result.scalars().all())

                claimed_ids = []
                for job_id in candidate_ids:
                    claim = await session.execute(
                        update(MeterEventJob)
                        .where(and_(MeterEventJob.id == job_id, MeterEventJob.status == MeterEventJobStatus.WAITING))
                        .values(
                            status=MeterEventJobStatus.ACTIVE,
                            attempt=MeterEventJob.attempt + 1,
                            claimed_at=now,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if claim.rowcount == 1:
                        claimed_ids.append(job_id)

                if not claimed_ids:
                    return []

                jobs = await session.execute(select(MeterEventJob).where(MeterEventJob.id.in_(claimed_ids)))
                return list(jobs.scalars().all())

    async def _finish(self, job_id: UUID, **values) -> bool:
        """Apply an update to an ACTIVE job. Returns False if the job was no longer active."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(MeterEventJob)
                    .where(and_(MeterEventJob.id == job_id, MeterEventJob.status == MeterEventJobStatus.ACTIVE))
                    .values(updated_at=datetime.utcnow(), **values)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    async def mark_completed(self, job: MeterEventJob, outcome: MeterEventOutcome = MeterEventOutcome.DELIVERED) -> None:
        """Mark an active job delivered (or already delivered)."""
        await self._finish(
            job.id,
            status=MeterEventJobStatus.COMPLETED,
            outcome=outcome,
            completed_at=datetime.utcnow(),
            last_error=None,
        )
        metrics.meter_events_delivered_total.labels(outcome=outcome.value).inc()
        logger.info(
            "meter_event_delivered",
            job_id=job_id_for(job),
            event_name=job.event_name,
            value=job.value,
            outcome=outcome.value,
            attempt=job.attempt,
        )

    async def mark_retry(self, job: MeterEventJob, error: str, reason: str = "transient") -> bool:
        """
        Schedule another attempt with exponential backoff.

        A job that used up its attempts is marked FAILED instead.

        Returns:
            True if a retry was scheduled
        """
        if job.attempt >= job.max_attempts:
            await self.mark_failed(job, error, reason="exhausted")
            return False

        delay = self.backoff_seconds(job.attempt)
        await self._finish(
            job.id,
            status=MeterEventJobStatus.WAITING,
            run_at=datetime.utcnow() + timedelta(seconds=delay),
            last_error=error[:500],
        )
        metrics.meter_events_retried_total.labels(reason=reason).inc()
        logger.info(
            "meter_event_retry_scheduled",
            job_id=job_id_for(job),
            event_name=job.event_name,
            attempt=job.attempt,
            reason=reason,
            retry_in_seconds=delay,
        )
        return True

    async def mark_failed(self, job: MeterEventJob, error: str, reason: str = "permanent") -> None:
        """Mark a job permanently failed. It stays visible until pruned."""
        await self._finish(
            job.id,
            status=MeterEventJobStatus.FAILED,
            failed_at=datetime.utcnow(),
            last_error=error[:500],
        )
        metrics.meter_events_failed_total.labels(reason=reason).inc()
        logger.error(
            "meter_event_permanently_failed",
            job_id=job_id_for(job),
            event_name=job.event_name,
            customer_id=job.external_customer_id,
            value=job.value,
            attempts=job.attempt,
            reason=reason,
            last_error=error,
        )

    async def recover_stale_active(self, older_than_seconds: int | None = None, now: datetime | None = None) -> int:
        """
        Re-queue jobs left ACTIVE by a worker that died mid-delivery.

        Redelivery is safe because the provider deduplicates by idempotency key.

        Returns:
            Number of jobs re-queued
        """
        now = now or datetime.utcnow()
        cutoff = now - timedelta(seconds=older_than_seconds or self.settings.meter_stale_active_seconds)

        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(MeterEventJob)
                    .where(and_(MeterEventJob.status == MeterEventJobStatus.ACTIVE, MeterEventJob.claimed_at < cutoff))
                    .values(status=MeterEventJobStatus.WAITING, run_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                recovered = result.rowcount

        if recovered:
            logger.warning("meter_events_recovered", count=recovered)
        return recovered

    async def stats(self, now: datetime | None = None) -> QueueStats:
        """
        Queue depth by state. A waiting job not yet due counts as delayed.
        """
        now = now or datetime.utcnow()

        async with self.session_factory() as session:
            result = await session.execute(
                select(MeterEventJob.status, func.count()).group_by(MeterEventJob.status)
            )
            counts = {status: count for status, count in result.all()}

            delayed_result = await session.execute(
                select(func.count())
                .select_from(MeterEventJob)
                .where(and_(MeterEventJob.status == MeterEventJobStatus.WAITING, MeterEventJob.run_at > now))
            )
            delayed = delayed_result.scalar_one()

        stats = QueueStats(
            waiting=counts.get(MeterEventJobStatus.WAITING, 0) - delayed,
            active=counts.get(MeterEventJobStatus.ACTIVE, 0),
            completed=counts.get(MeterEventJobStatus.COMPLETED, 0),
            failed=counts.get(MeterEventJobStatus.FAILED, 0),
            delayed=delayed,
        )

        for state, value in stats.model_dump().items():
            metrics.meter_queue_jobs.labels(state=state).set(value)

        return stats

    async def list_failed(self, limit: int = 50) -> list[MeterEventJob]:
        """Most recently failed jobs, for operators."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(MeterEventJob)
                .where(MeterEventJob.status == MeterEventJobStatus.FAILED)
                .order_by(MeterEventJob.failed_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def prune(self, now: datetime | None = None) -> dict[str, int]:
        """
        Delete completed jobs after the completed retention and failed jobs
        after the (longer) failed retention.

        Returns:
            Dict with counts of deleted jobs
        """
        now = now or datetime.utcnow()
        completed_cutoff = now - timedelta(seconds=self.settings.meter_keep_completed_seconds)
        failed_cutoff = now - timedelta(seconds=self.settings.meter_keep_failed_seconds)

        async with self.session_factory() as session:
            async with session.begin():
                completed = await session.execute(
                    delete(MeterEventJob)
                    .where(and_(MeterEventJob.status == MeterEventJobStatus.COMPLETED, MeterEventJob.completed_at < completed_cutoff))
                    .execution_options(synchronize_session=False)
                )
                failed = await session.execute(
                    delete(MeterEventJob)
                    .where(and_(MeterEventJob.status == MeterEventJobStatus.FAILED, MeterEventJob.failed_at < failed_cutoff))
                    .execution_options(synchronize_session=False)
                )

        return {"completed": completed.rowcount, "failed": failed.rowcount}
