"""Pydantic schemas for metered usage."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from creditledger.models.usage_period import UsagePeriodStatus


class UsageMetrics(BaseModel):
    """Raw per-resource counters for a billing period."""

    function_calls: int = Field(default=0, ge=0, description="Number of function invocations")
    action_compute_ms: int = Field(default=0, ge=0, description="Action execution time in milliseconds")
    database_bandwidth_bytes: int = Field(default=0, ge=0)
    database_storage_bytes: int = Field(default=0, ge=0, description="Peak database storage")
    file_bandwidth_bytes: int = Field(default=0, ge=0)
    file_storage_bytes: int = Field(default=0, ge=0, description="Peak file storage")
    vector_bandwidth_bytes: int = Field(default=0, ge=0)
    vector_storage_bytes: int = Field(default=0, ge=0, description="Peak vector storage")

    model_config = ConfigDict(from_attributes=True)


class ResourceCost(BaseModel):
    """Usage of one resource in display units and its credit contribution."""

    usage: Decimal
    unit: str
    credits: Decimal


class CreditBreakdown(BaseModel):
    """Per-resource credit contributions; `total` is the billable amount."""

    function_calls: ResourceCost
    action_compute: ResourceCost
    database_bandwidth: ResourceCost
    database_storage: ResourceCost
    file_bandwidth: ResourceCost
    file_storage: ResourceCost
    vector_bandwidth: ResourceCost
    vector_storage: ResourceCost
    raw_total: Decimal
    total: int


class UsagePeriod(BaseModel):
    """Schema for returning a usage period."""

    id: UUID
    account_id: UUID
    period_start: datetime
    period_end: datetime
    status: UsagePeriodStatus
    raw_credits: Decimal
    total_cost: int
    calculated_at: datetime | None
    reported_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class ReportResult(BaseModel):
    """Outcome of reporting a period to the metering provider."""

    period_id: UUID | None = None
    status: UsagePeriodStatus | None = None
    queued: int = 0
    skipped: int = 0
    job_ids: list[str] = Field(default_factory=list)


class UsageBreakdownResponse(BaseModel):
    """Schema for the current period and its credit breakdown."""

    period: UsagePeriod | None
    breakdown: CreditBreakdown


class CreditsSyncResult(BaseModel):
    """Counts from one credits sync run."""

    accounts: int = 0
    queued: int = 0
    skipped: int = 0
    errors: int = 0


class ReconciliationReport(BaseModel):
    """Local cumulative credits compared with the provider's meter summaries."""

    account_id: UUID
    local_credits: int
    provider_credits: int
    drift: int
    in_sync: bool
