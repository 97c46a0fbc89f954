"""Integration tests for syncing cumulative credits to the credits meter."""
import calendar
from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from creditledger.adapters.interfaces import MeterEventSummary
from creditledger.config import Settings
from creditledger.exceptions import AccountNotFoundError
from creditledger.models.account import MembershipTier
from creditledger.schemas.usage import UsageMetrics
from creditledger.services.credits_sync import CreditsSyncService, sync_idempotency_key
from creditledger.services.meter_event_queue import MeterEventQueue
from creditledger.services.usage_reporting import UsageReportingService
from tests.utils.factories import create_account
from tests.utils.fakes import FakeMeteringProvider

NOW = datetime(2026, 10, 19, 9, 30)
MEMBER_UNTIL = NOW + timedelta(days=20)


@pytest.fixture
def credits_sync(session_factory, queue, aggregator, fake_metering, test_settings) -> CreditsSyncService:  # noqa: ANN001
    return CreditsSyncService(session_factory, queue, fake_metering, aggregator, test_settings)


async def _account_with_usage(session_factory, usage_reporting: UsageReportingService, calls: int, **overrides):  # noqa: ANN001, ANN202
    overrides.setdefault("membership_expires_at", MEMBER_UNTIL)
    account = await create_account(session_factory, **overrides)
    if calls:
        await usage_reporting.record_usage(account.id, UsageMetrics(function_calls=calls), now=NOW)
    return account


def test_sync_key_format() -> None:
    """Test the credits sync idempotency key layout."""
    account_id = uuid4()

    key = sync_idempotency_key(datetime(2026, 10, 1), account_id, 1792402200)

    assert key == f"2026-10-{account_id}-1792402200-credits-sync"


@pytest.mark.asyncio
async def test_sync_all_enqueues_active_accounts_only(
    credits_sync: CreditsSyncService,
    usage_reporting: UsageReportingService,
    queue: MeterEventQueue,
    session_factory,
) -> None:
    """Test that only paid, unexpired, billable accounts with usage are synced."""
    active = await _account_with_usage(session_factory, usage_reporting, 4000)
    await _account_with_usage(session_factory, usage_reporting, 4000, membership_tier=MembershipTier.FREE)
    await _account_with_usage(session_factory, usage_reporting, 4000, membership_expires_at=NOW - timedelta(days=1))
    await _account_with_usage(session_factory, usage_reporting, 4000, external_customer_id=None)
    await _account_with_usage(session_factory, usage_reporting, 0)

    result = await credits_sync.sync_all(now=NOW)

    assert result.accounts == 1
    assert result.queued == 1
    assert result.errors == 0

    key = sync_idempotency_key(datetime(2026, 10, 1), active.id, calendar.timegm(NOW.utctimetuple()))
    job = await queue.get_job(key)
    assert job.event_name == "cloud_credits"
    assert job.external_customer_id == active.external_customer_id
    # 4000 calls = 1.2 credits, billed as 2
    assert job.value == 2
    assert job.event_timestamp == NOW


@pytest.mark.asyncio
async def test_sync_sends_running_total_each_run(
    credits_sync: CreditsSyncService,
    usage_reporting: UsageReportingService,
    queue: MeterEventQueue,
    session_factory,
) -> None:
    """Test that each sync carries the cumulative total under its own key."""
    account = await _account_with_usage(session_factory, usage_reporting, 1000)
    await credits_sync.sync_all(now=NOW)
    await usage_reporting.record_usage(account.id, UsageMetrics(function_calls=10_000), now=NOW)
    later = NOW + timedelta(minutes=5)

    await credits_sync.sync_all(now=later)
    await credits_sync.sync_all(now=later)

    first = await queue.get_job(sync_idempotency_key(datetime(2026, 10, 1), account.id, calendar.timegm(NOW.utctimetuple())))
    second = await queue.get_job(
        sync_idempotency_key(datetime(2026, 10, 1), account.id, calendar.timegm(later.utctimetuple()))
    )
    assert first.value == 1
    assert second.value == 4
    assert (await queue.stats()).waiting == 2


@pytest.mark.asyncio
async def test_sync_counts_failures_and_continues(
    credits_sync: CreditsSyncService,
    usage_reporting: UsageReportingService,
    queue: MeterEventQueue,
    session_factory,
    monkeypatch,
) -> None:
    """Test that one account failing does not stop the others."""
    await _account_with_usage(session_factory, usage_reporting, 1000)
    await _account_with_usage(session_factory, usage_reporting, 2000)
    enqueue = queue.enqueue
    calls = []

    async def flaky_enqueue(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
        calls.append(args)
        if len(calls) == 1:
            raise RuntimeError("database unavailable")
        return await enqueue(*args, **kwargs)

    monkeypatch.setattr(queue, "enqueue", flaky_enqueue)

    result = await credits_sync.sync_all(now=NOW)

    assert result.accounts == 2
    assert result.errors == 1
    assert result.queued == 1


@pytest.mark.asyncio
async def test_verify_account_in_sync(
    credits_sync: CreditsSyncService,
    usage_reporting: UsageReportingService,
    fake_metering: FakeMeteringProvider,
    session_factory,
) -> None:
    """Test reconciliation against the latest meter summary."""
    account = await _account_with_usage(session_factory, usage_reporting, 4000)
    fake_metering.summaries = [
        MeterEventSummary(aggregated_value=2, start_time=datetime(2026, 10, 19, 8), end_time=datetime(2026, 10, 19, 9)),
        MeterEventSummary(aggregated_value=1, start_time=datetime(2026, 10, 19, 7), end_time=datetime(2026, 10, 19, 8)),
    ]

    report = await credits_sync.verify_account(account.id, now=NOW)

    assert report.local_credits == 2
    assert report.provider_credits == 2
    assert report.drift == 0
    assert report.in_sync
    assert fake_metering.summary_requests == [
        {
            "meter_id": "mtr_test_credits",
            "external_customer_id": account.external_customer_id,
            "start_time": datetime(2026, 10, 1),
            "end_time": NOW,
        }
    ]


@pytest.mark.asyncio
async def test_verify_account_reports_drift(
    credits_sync: CreditsSyncService,
    usage_reporting: UsageReportingService,
    fake_metering: FakeMeteringProvider,
    session_factory,
) -> None:
    """Test that a lagging meter shows up as positive drift."""
    account = await _account_with_usage(session_factory, usage_reporting, 20_000)
    fake_metering.summaries = [
        MeterEventSummary(aggregated_value=3, start_time=datetime(2026, 10, 19, 8), end_time=datetime(2026, 10, 19, 9)),
    ]

    report = await credits_sync.verify_account(account.id, now=NOW)

    assert report.local_credits == 6
    assert report.provider_credits == 3
    assert report.drift == 3
    assert not report.in_sync


@pytest.mark.asyncio
async def test_verify_account_without_customer_or_meter(
    credits_sync: CreditsSyncService,
    usage_reporting: UsageReportingService,
    fake_metering: FakeMeteringProvider,
    queue: MeterEventQueue,
    session_factory,
    test_settings: Settings,
) -> None:
    """Test that the provider is not queried without a customer id or a meter id."""
    no_customer = await _account_with_usage(session_factory, usage_reporting, 1000, external_customer_id=None)
    customer = await _account_with_usage(session_factory, usage_reporting, 1000)
    no_meter = CreditsSyncService(
        session_factory, queue, fake_metering, settings=test_settings.model_copy(update={"credits_meter_id": ""})
    )

    first = await credits_sync.verify_account(no_customer.id, now=NOW)
    second = await no_meter.verify_account(customer.id, now=NOW)

    assert first.provider_credits == 0
    assert first.drift == 1
    assert second.provider_credits == 0
    assert fake_metering.summary_requests == []


@pytest.mark.asyncio
async def test_verify_unknown_account(credits_sync: CreditsSyncService) -> None:
    """Test that reconciling a missing account raises."""
    with pytest.raises(AccountNotFoundError):
        await credits_sync.verify_account(uuid4(), now=NOW)
