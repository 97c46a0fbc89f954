"""Pydantic schemas for meter events."""
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from creditledger.models.meter_event_job import MeterEventJobStatus


class MeterEventCreate(BaseModel):
    """Schema for enqueueing a meter event."""

    event_name: str = Field(..., min_length=1, description="Provider meter event name")
    external_customer_id: str = Field(..., min_length=1, description="Provider customer ID")
    value: int = Field(..., description="Integer units; values <= 0 are ignored")
    timestamp: datetime | None = Field(default=None, description="When the usage happened")
    idempotency_key: str | None = Field(default=None, max_length=255)


class MeterEventEnqueued(BaseModel):
    """Schema for an enqueue response."""

    job_id: str | None
    queued: bool


class MeterEventJob(BaseModel):
    """Schema for returning a meter event job."""

    id: UUID
    event_name: str
    external_customer_id: str
    value: int
    idempotency_key: str | None
    status: MeterEventJobStatus
    attempt: int
    max_attempts: int
    run_at: datetime
    last_error: str | None
    failed_at: datetime | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class QueueStats(BaseModel):
    """Queue depth counters for health monitoring."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


class QueueHealth(BaseModel):
    """Schema for the queue health endpoint."""

    status: str
    worker_alive: bool
    live_mode: bool
    rate_limit: int
    in_flight: int
    stats: QueueStats
