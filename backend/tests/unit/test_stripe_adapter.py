"""Tests for the Stripe adapter's request building and error mapping."""
from datetime import datetime
from types import SimpleNamespace

import pytest
import stripe

from creditledger.adapters.stripe_adapter import StripeAdapter, translate_stripe_error
from creditledger.config import Settings
from creditledger.exceptions import (
    ProviderIdempotencyConflict,
    ProviderPermanentError,
    ProviderRateLimitedError,
    ProviderTransientError,
)


@pytest.fixture
def adapter() -> StripeAdapter:
    return StripeAdapter(Settings(_env_file=None, stripe_secret_key="sk_test_adapter"))


@pytest.mark.parametrize(
    "error,expected",
    [
        (stripe.RateLimitError("Too many requests"), ProviderRateLimitedError),
        (stripe.APIConnectionError("Connection reset"), ProviderTransientError),
        (stripe.APIError("Internal error"), ProviderTransientError),
        (stripe.InvalidRequestError("No such customer", param="customer", code="resource_missing"), ProviderPermanentError),
        (
            stripe.InvalidRequestError("Key reused", param=None, code="idempotency_key_in_use"),
            ProviderIdempotencyConflict,
        ),
        (stripe.IdempotencyError("Key reused with different parameters"), ProviderIdempotencyConflict),
        (stripe.CardError("Your card was declined.", param=None, code="card_declined"), ProviderPermanentError),
        (stripe.AuthenticationError("Invalid API key"), ProviderPermanentError),
    ],
)
def test_translate_stripe_error(error: stripe.StripeError, expected: type) -> None:
    """Test that each Stripe failure maps to the worker's error taxonomy."""
    translated = translate_stripe_error(error)

    assert type(translated) is expected
    assert translated.message


def test_live_mode_follows_key() -> None:
    """Test that live keys select live mode."""
    assert StripeAdapter(Settings(_env_file=None, stripe_secret_key="sk_live_abc")).is_live_mode
    assert not StripeAdapter(Settings(_env_file=None, stripe_secret_key="sk_test_abc")).is_live_mode


@pytest.mark.asyncio
async def test_submit_event_parameters(adapter: StripeAdapter, monkeypatch) -> None:
    """Test the meter event payload: string value, epoch timestamp and idempotency key as identifier."""
    calls = []
    monkeypatch.setattr(stripe.billing.MeterEvent, "create", lambda **params: calls.append(params))

    await adapter.submit_event(
        "cloud_credits",
        "cus_abc",
        42,
        timestamp=datetime(2026, 10, 19, 0, 0),
        idempotency_key="2026-10-acct-1792368000-credits-sync",
    )

    assert calls == [
        {
            "event_name": "cloud_credits",
            "payload": {"stripe_customer_id": "cus_abc", "value": "42"},
            "timestamp": 1792368000,
            "identifier": "2026-10-acct-1792368000-credits-sync",
            "idempotency_key": "2026-10-acct-1792368000-credits-sync",
        }
    ]


@pytest.mark.asyncio
async def test_submit_event_translates_errors(adapter: StripeAdapter, monkeypatch) -> None:
    """Test that SDK errors surface as provider errors."""

    def rate_limited(**params):  # noqa: ANN003, ANN202
        raise stripe.RateLimitError("Too many requests")

    monkeypatch.setattr(stripe.billing.MeterEvent, "create", rate_limited)

    with pytest.raises(ProviderRateLimitedError):
        await adapter.submit_event("cloud_credits", "cus_abc", 1)


@pytest.mark.asyncio
async def test_charge_requires_immediate_success(adapter: StripeAdapter, monkeypatch) -> None:
    """Test that a payment needing further action is a failed charge."""
    intents = iter(
        [
            SimpleNamespace(id="pi_ok", status="succeeded", amount=2000),
            SimpleNamespace(id="pi_3ds", status="requires_action", amount=2000),
        ]
    )
    monkeypatch.setattr(stripe.PaymentIntent, "create", lambda **params: next(intents))

    result = await adapter.charge("cus_abc", "pm_card", 2000, "auto-top-up-1", "Auto top-up: 2000 credits")
    assert result.id == "pi_ok"
    assert result.amount_cents == 2000

    with pytest.raises(ProviderPermanentError):
        await adapter.charge("cus_abc", "pm_card", 2000, "auto-top-up-2", "Auto top-up: 2000 credits")


@pytest.mark.asyncio
async def test_list_event_summaries(adapter: StripeAdapter, monkeypatch) -> None:
    """Test conversion of meter summaries to naive UTC windows."""
    requests = []

    def list_event_summaries(meter_id, **params):  # noqa: ANN001, ANN003, ANN202
        requests.append((meter_id, params))
        return SimpleNamespace(
            data=[SimpleNamespace(aggregated_value=17.0, start_time=1792368000, end_time=1792371600)]
        )

    monkeypatch.setattr(stripe.billing.Meter, "list_event_summaries", list_event_summaries)

    [summary] = await adapter.list_event_summaries(
        "mtr_1", "cus_abc", datetime(2026, 10, 1), datetime(2026, 10, 19)
    )

    assert summary.aggregated_value == 17.0
    assert summary.start_time == datetime(2026, 10, 19, 0, 0)
    assert summary.end_time == datetime(2026, 10, 19, 1, 0)
    assert requests[0][0] == "mtr_1"
    assert requests[0][1]["customer"] == "cus_abc"
