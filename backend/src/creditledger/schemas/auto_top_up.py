"""Pydantic schemas for auto top-up."""
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class AutoTopUpConfigUpdate(BaseModel):
    """Schema for creating or updating an auto top-up configuration."""

    enabled: bool = Field(default=True)
    threshold_credits: int = Field(..., ge=0, description="Top up when the balance drops below this")
    top_up_credits: int = Field(..., gt=0, description="Credits bought per top-up (1 credit = 1 cent)")
    payment_method_id: str | None = Field(default=None, description="Stripe payment method ID")
    max_monthly_top_ups: int = Field(default=5, ge=1, le=100)


class AutoTopUpConfig(BaseModel):
    """Schema for returning an auto top-up configuration."""

    id: UUID
    account_id: UUID
    enabled: bool
    threshold_credits: int
    top_up_credits: int
    payment_method_id: str | None
    max_monthly_top_ups: int
    top_ups_this_month: int
    consecutive_failures: int
    needs_manual_review: bool
    last_top_up_at: datetime | None
    last_top_up_amount: int | None
    last_top_up_error: str | None

    model_config = ConfigDict(from_attributes=True)


class TopUpResult(BaseModel):
    """Outcome of one top-up attempt."""

    account_id: UUID
    success: bool
    credits_added: int = 0
    payment_id: str | None = None
    error: str | None = None


class AutoTopUpRunResult(BaseModel):
    """Counts from one scheduled auto top-up run."""

    checked: int = 0
    triggered: int = 0
    succeeded: int = 0
    failed: int = 0
