"""Meter event queue API endpoints."""
from fastapi import APIRouter, Depends, status

from creditledger.api.deps import get_queue
from creditledger.schemas.meter_event import MeterEventCreate, MeterEventEnqueued, MeterEventJob
from creditledger.services.meter_event_queue import MeterEventQueue

router = APIRouter(prefix="/meter-events", tags=["Meter Events"])


@router.post("", response_model=MeterEventEnqueued, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_meter_event(
    event: MeterEventCreate,
    queue: MeterEventQueue = Depends(get_queue),
) -> MeterEventEnqueued:
    """
    Queue a meter event for delivery.

    Values <= 0 are accepted and ignored (`queued` is false). Re-sending an
    idempotency key returns the existing job.
    """
    job_id = await queue.enqueue(
        event.event_name,
        event.external_customer_id,
        event.value,
        timestamp=event.timestamp,
        idempotency_key=event.idempotency_key,
    )
    return MeterEventEnqueued(job_id=job_id, queued=job_id is not None)


@router.get("/failed", response_model=list[MeterEventJob])
async def list_failed_events(
    limit: int = 50,
    queue: MeterEventQueue = Depends(get_queue),
) -> list[MeterEventJob]:
    """Most recent permanently failed deliveries."""
    jobs = await queue.list_failed(min(max(limit, 1), 500))
    return [MeterEventJob.model_validate(job) for job in jobs]
