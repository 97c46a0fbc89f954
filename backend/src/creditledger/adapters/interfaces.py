"""
Provider interfaces.

The meter event worker and the reconciliation jobs depend on these, never on
a concrete SDK wrapper.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from pydantic import BaseModel


class MeterEventSummary(BaseModel):
    """Aggregated meter value for a customer over a time window."""

    aggregated_value: float
    start_time: datetime
    end_time: datetime


class ChargeResult(BaseModel):
    """Outcome of an off-session charge."""

    id: str
    status: str
    amount_cents: int


class MeteringProvider(ABC):
    """External metered-billing system of record."""

    @abstractmethod
    async def submit_event(
        self,
        event_name: str,
        external_customer_id: str,
        value: int,
        timestamp: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> None:
        """
        Submit one meter event.

        Raises:
            ProviderRateLimitedError: Provider rate limit hit (retryable)
            ProviderTransientError: Network/server failure (retryable)
            ProviderIdempotencyConflict: Event with this key already accepted
            ProviderPermanentError: Request rejected
        """

    @abstractmethod
    async def list_event_summaries(
        self,
        meter_id: str,
        external_customer_id: str,
        start_time: datetime,
        end_time: datetime,
    ) -> list[MeterEventSummary]:
        """Aggregated meter values for a customer between two instants."""


class PaymentProvider(ABC):
    """Charges a saved payment method without the customer present."""

    @abstractmethod
    async def charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount_cents: int,
        idempotency_key: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChargeResult:
        """
        Charge the payment method.

        Raises:
            ProviderError: If the charge fails
        """
