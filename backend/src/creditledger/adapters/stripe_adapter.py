"""Stripe metering and payment adapter."""
import asyncio
from datetime import datetime, timezone
from typing import Any

import stripe
import structlog

from creditledger.adapters.interfaces import ChargeResult, MeterEventSummary, MeteringProvider, PaymentProvider
from creditledger.config import Settings, settings as default_settings
from creditledger.exceptions import (
    ProviderError,
    ProviderIdempotencyConflict,
    ProviderPermanentError,
    ProviderRateLimitedError,
    ProviderTransientError,
)

logger = structlog.get_logger(__name__)


def _epoch(value: datetime) -> int:
    """Naive datetimes are UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def translate_stripe_error(exc: stripe.StripeError) -> ProviderError:
    """
    Map a Stripe exception onto the provider error taxonomy.

    Args:
        exc: Exception raised by the Stripe SDK

    Returns:
        ProviderError subclass the worker knows how to handle
    """
    code = getattr(exc, "code", None)
    message = getattr(exc, "user_message", None) or str(exc)

    if isinstance(exc, stripe.RateLimitError):
        return ProviderRateLimitedError(message, code)
    if isinstance(exc, stripe.IdempotencyError):
        return ProviderIdempotencyConflict(message, code)
    if isinstance(exc, stripe.APIConnectionError):
        return ProviderTransientError(message, code)
    if isinstance(exc, stripe.InvalidRequestError):
        # Meter events reuse the same idempotency key space as other requests
        if code == "idempotency_key_in_use":
            return ProviderIdempotencyConflict(message, code)
        return ProviderPermanentError(message, code)
    if isinstance(exc, stripe.APIError):
        return ProviderTransientError(message, code)
    if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError, stripe.CardError)):
        return ProviderPermanentError(message, code)

    # Unknown Stripe failures are retried; exhausted retries still surface as failed jobs
    return ProviderTransientError(message, code)


class StripeAdapter(MeteringProvider, PaymentProvider):
    """
    Adapter for Stripe Billing Meters and off-session PaymentIntents.

    The Stripe SDK is synchronous, so calls run in a worker thread.
    """

    def __init__(self, settings: Settings = default_settings):
        """Initialize Stripe adapter with API key."""
        self.settings = settings
        stripe.api_key = settings.stripe_secret_key

    @property
    def is_live_mode(self) -> bool:
        return self.settings.is_live_mode

    async def submit_event(
        self,
        event_name: str,
        external_customer_id: str,
        value: int,
        timestamp: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> None:
        """
        Create a Stripe meter event.

        Args:
            event_name: Meter event name
            external_customer_id: Stripe customer ID
            value: Whole units
            timestamp: When the usage happened (defaults to now at Stripe)
            idempotency_key: Stripe idempotency key
        """
        params: dict[str, Any] = {
            "event_name": event_name,
            "payload": {
                "stripe_customer_id": external_customer_id,
                "value": str(int(value)),
            },
        }

        if timestamp:
            params["timestamp"] = _epoch(timestamp)

        if idempotency_key:
            params["identifier"] = idempotency_key
            params["idempotency_key"] = idempotency_key

        try:
            await asyncio.to_thread(stripe.billing.MeterEvent.create, **params)
        except stripe.StripeError as e:
            raise translate_stripe_error(e) from e

        logger.debug(
            "stripe_meter_event_created",
            event_name=event_name,
            customer_id=external_customer_id,
            value=value,
            idempotency_key=idempotency_key,
        )

    async def list_event_summaries(
        self,
        meter_id: str,
        external_customer_id: str,
        start_time: datetime,
        end_time: datetime,
    ) -> list[MeterEventSummary]:
        """
        List aggregated meter values for a customer.

        Args:
            meter_id: Stripe meter ID
            external_customer_id: Stripe customer ID
            start_time: Window start
            end_time: Window end

        Returns:
            Summaries in the window
        """
        try:
            summaries = await asyncio.to_thread(
                stripe.billing.Meter.list_event_summaries,
                meter_id,
                customer=external_customer_id,
                start_time=_epoch(start_time),
                end_time=_epoch(end_time),
            )
        except stripe.StripeError as e:
            raise translate_stripe_error(e) from e

        return [
            MeterEventSummary(
                aggregated_value=summary.aggregated_value,
                start_time=datetime.utcfromtimestamp(summary.start_time),
                end_time=datetime.utcfromtimestamp(summary.end_time),
            )
            for summary in summaries.data
        ]

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
        Charge a saved payment method off-session.

        Args:
            customer_id: Stripe customer ID
            payment_method_id: Stripe payment method ID
            amount_cents: Amount in cents
            idempotency_key: Stripe idempotency key
            description: Statement description
            metadata: Additional metadata

        Returns:
            Charge result

        Raises:
            ProviderError: If the payment fails or does not succeed immediately
        """
        try:
            payment_intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=amount_cents,
                currency="usd",
                customer=customer_id,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                description=description,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.warning(
                "stripe_charge_failed",
                customer_id=customer_id,
                amount_cents=amount_cents,
                stripe_code=getattr(e, "code", None),
            )
            raise translate_stripe_error(e) from e

        if payment_intent.status != "succeeded":
            raise ProviderPermanentError(f"Payment not completed: {payment_intent.status}", payment_intent.status)

        return ChargeResult(id=payment_intent.id, status=payment_intent.status, amount_cents=payment_intent.amount)
