"""Integration tests for automatic credit top-ups."""
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from creditledger.config import Settings
from creditledger.exceptions import AccountNotFoundError, ProviderError, ValidationError
from creditledger.models.credit_transaction import CreditTransactionType
from creditledger.schemas.auto_top_up import AutoTopUpConfigUpdate
from creditledger.services.auto_top_up import AutoTopUpService
from creditledger.services.credit_grant_service import CreditGrantService
from creditledger.services.credit_ledger import CreditLedger
from tests.utils.factories import create_account, create_auto_top_up_config, get_account
from tests.utils.fakes import FakePaymentProvider


@pytest.fixture
def auto_top_up(
    session_factory,  # noqa: ANN001
    ledger: CreditLedger,
    grant_service: CreditGrantService,
    fake_payments: FakePaymentProvider,
    test_settings: Settings,
) -> AutoTopUpService:
    return AutoTopUpService(session_factory, ledger, grant_service, fake_payments, test_settings)


@pytest.mark.asyncio
async def test_top_up_charges_and_adds_purchased_credits(
    auto_top_up: AutoTopUpService,
    ledger: CreditLedger,
    fake_payments: FakePaymentProvider,
    session_factory,
) -> None:
    """Test that a low balance triggers a charge and lands credits in the purchased bucket."""
    account = await create_account(session_factory)
    config = await create_auto_top_up_config(session_factory, account.id)

    result = await auto_top_up.check_and_top_up(account.id)

    assert result.success
    assert result.credits_added == 2000
    assert result.payment_id == "pi_test_1"

    [charge] = fake_payments.charges
    assert charge["customer_id"] == account.external_customer_id
    assert charge["payment_method_id"] == config.payment_method_id
    assert charge["amount_cents"] == 2000
    assert charge["idempotency_key"].startswith(f"auto-top-up-{config.id}-")
    assert charge["idempotency_key"].endswith("-1")

    stored = await get_account(session_factory, account.id)
    assert stored.purchased_credits == Decimal("2000")
    assert stored.balance == Decimal("2100")

    [transaction], _ = await ledger.list_transactions(account.id, type=CreditTransactionType.AUTO_TOP_UP)
    assert transaction.amount == Decimal("2000")
    assert transaction.details["kind"] == "top_up"
    assert transaction.details["payment_id"] == "pi_test_1"
    assert transaction.details["top_up_number"] == 1

    updated = await auto_top_up.get_config(account.id)
    assert updated.top_ups_this_month == 1
    assert updated.monthly_reset_at is not None
    assert updated.last_top_up_amount == 2000
    assert updated.consecutive_failures == 0

    assert await auto_top_up.check_and_top_up(account.id) is None
    assert len(fake_payments.charges) == 1


@pytest.mark.asyncio
async def test_no_top_up_above_threshold(
    auto_top_up: AutoTopUpService, fake_payments: FakePaymentProvider, session_factory
) -> None:
    """Test that a healthy balance is left alone."""
    account = await create_account(session_factory, balance=Decimal("800"), base_plan_credits=Decimal("800"))
    await create_auto_top_up_config(session_factory, account.id)

    assert await auto_top_up.check_and_top_up(account.id) is None
    assert fake_payments.charges == []


@pytest.mark.asyncio
async def test_disabled_or_incomplete_config_is_skipped(
    auto_top_up: AutoTopUpService, fake_payments: FakePaymentProvider, session_factory
) -> None:
    """Test configs that are off, lack a payment method, or belong to an account without a customer."""
    disabled = await create_account(session_factory)
    await create_auto_top_up_config(session_factory, disabled.id, enabled=False)
    no_method = await create_account(session_factory)
    await create_auto_top_up_config(session_factory, no_method.id, payment_method_id=None)
    no_customer = await create_account(session_factory, external_customer_id=None)
    await create_auto_top_up_config(session_factory, no_customer.id)

    for account in (disabled, no_method, no_customer):
        assert await auto_top_up.check_and_top_up(account.id) is None
    assert await auto_top_up.check_and_top_up(uuid4()) is None
    assert fake_payments.charges == []


@pytest.mark.asyncio
async def test_payment_failure_counts_and_pauses(
    auto_top_up: AutoTopUpService, fake_payments: FakePaymentProvider, session_factory
) -> None:
    """Test that declined charges are counted and pause top-ups after three in a row."""
    account = await create_account(session_factory)
    await create_auto_top_up_config(session_factory, account.id)
    fake_payments.error = ProviderError("Your card was declined.", code="card_declined")

    results = [await auto_top_up.check_and_top_up(account.id) for _ in range(3)]

    assert [result.success for result in results] == [False, False, False]
    assert results[0].error == "Your card was declined."
    config = await auto_top_up.get_config(account.id)
    assert config.consecutive_failures == 3
    assert config.last_top_up_error == "Your card was declined."
    assert config.top_ups_this_month == 0

    fake_payments.error = None
    assert await auto_top_up.check_and_top_up(account.id) is None

    stored = await get_account(session_factory, account.id)
    assert stored.balance == Decimal("100")


@pytest.mark.asyncio
async def test_grant_failure_after_payment_needs_manual_review(
    auto_top_up: AutoTopUpService,
    grant_service: CreditGrantService,
    session_factory,
    monkeypatch,
) -> None:
    """Test that a charge without credits is flagged and does not count against the monthly limit."""
    account = await create_account(session_factory)
    await create_auto_top_up_config(session_factory, account.id)

    async def broken_apply(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
        raise RuntimeError("database went away")

    monkeypatch.setattr(grant_service, "apply_grant", broken_apply)

    result = await auto_top_up.check_and_top_up(account.id)

    assert not result.success
    assert result.payment_id == "pi_test_1"
    assert "Manual intervention required" in result.error

    config = await auto_top_up.get_config(account.id)
    assert config.needs_manual_review
    assert config.top_ups_this_month == 0
    stored = await get_account(session_factory, account.id)
    assert stored.balance == Decimal("100")


@pytest.mark.asyncio
async def test_monthly_limit(auto_top_up: AutoTopUpService, fake_payments: FakePaymentProvider, session_factory) -> None:
    """Test that the monthly cap blocks further top-ups until the month rolls over."""
    now = datetime.utcnow()
    capped = await create_account(session_factory)
    await create_auto_top_up_config(session_factory, capped.id, top_ups_this_month=5, monthly_reset_at=now)
    last_month = await create_account(session_factory)
    await create_auto_top_up_config(
        session_factory, last_month.id, top_ups_this_month=5, monthly_reset_at=now - timedelta(days=40)
    )

    assert await auto_top_up.check_and_top_up(capped.id, now=now) is None

    summary = await auto_top_up.run(now=now)

    assert summary.checked == 1
    assert summary.succeeded == 1
    assert len(fake_payments.charges) == 1
    config = await auto_top_up.get_config(last_month.id)
    assert config.top_ups_this_month == 1
    assert fake_payments.charges[0]["idempotency_key"].endswith("-1")


@pytest.mark.asyncio
async def test_run_checks_every_eligible_account(
    auto_top_up: AutoTopUpService, fake_payments: FakePaymentProvider, session_factory
) -> None:
    """Test a scheduled run over low, healthy and paused accounts."""
    low = await create_account(session_factory)
    await create_auto_top_up_config(session_factory, low.id)
    healthy = await create_account(session_factory, balance=Decimal("900"), base_plan_credits=Decimal("900"))
    await create_auto_top_up_config(session_factory, healthy.id)
    paused = await create_account(session_factory)
    await create_auto_top_up_config(session_factory, paused.id, consecutive_failures=3)

    summary = await auto_top_up.run()

    assert summary.checked == 2
    assert summary.triggered == 1
    assert summary.succeeded == 1
    assert summary.failed == 0
    assert [charge["customer_id"] for charge in fake_payments.charges] == [low.external_customer_id]


@pytest.mark.asyncio
async def test_configure_upserts_and_clears_failures(auto_top_up: AutoTopUpService, session_factory) -> None:
    """Test creating and then replacing a configuration."""
    account = await create_account(session_factory)
    await create_auto_top_up_config(session_factory, account.id, consecutive_failures=3, last_top_up_error="declined")

    config = await auto_top_up.configure(
        account.id,
        AutoTopUpConfigUpdate(threshold_credits=200, top_up_credits=1000, payment_method_id="pm_new"),
    )

    assert config.threshold_credits == 200
    assert config.top_up_credits == 1000
    assert config.payment_method_id == "pm_new"
    assert config.consecutive_failures == 0
    assert config.last_top_up_error is None

    fresh = await create_account(session_factory)
    created = await auto_top_up.configure(fresh.id, AutoTopUpConfigUpdate(threshold_credits=50, top_up_credits=100))
    assert created.enabled
    assert created.top_ups_this_month == 0


@pytest.mark.asyncio
async def test_configure_validation(auto_top_up: AutoTopUpService, session_factory) -> None:
    """Test the minimum purchase and the unknown account."""
    account = await create_account(session_factory)

    with pytest.raises(ValidationError):
        await auto_top_up.configure(account.id, AutoTopUpConfigUpdate(threshold_credits=10, top_up_credits=99))
    with pytest.raises(AccountNotFoundError):
        await auto_top_up.configure(uuid4(), AutoTopUpConfigUpdate(threshold_credits=10, top_up_credits=500))


@pytest.mark.asyncio
async def test_disable(auto_top_up: AutoTopUpService, session_factory) -> None:
    """Test turning auto top-up off."""
    account = await create_account(session_factory)
    await create_auto_top_up_config(session_factory, account.id)

    disabled = await auto_top_up.disable(account.id)

    assert not disabled.enabled
    assert await auto_top_up.disable(uuid4()) is None
