"""Sync of cumulative period credits to the unified credits meter."""
import calendar
from datetime import datetime
from uuid import UUID

import structlog
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditledger import metrics
from creditledger.adapters.interfaces import MeteringProvider
from creditledger.config import Settings, settings as default_settings
from creditledger.exceptions import AccountNotFoundError
from creditledger.models.account import Account, MembershipTier
from creditledger.models.usage_period import UsagePeriod
from creditledger.schemas.usage import CreditsSyncResult, ReconciliationReport
from creditledger.services.meter_event_queue import MeterEventQueue
from creditledger.services.usage_aggregator import UsageAggregator
from creditledger.services.usage_reporting import billing_period

logger = structlog.get_logger(__name__)


def sync_idempotency_key(period_start: datetime, account_id: UUID, sync_ts: int) -> str:
    """Key of one sync event: "{YYYY-MM}-{account}-{sync_ts}-credits-sync"."""
    return f"{period_start:%Y-%m}-{account_id}-{sync_ts}-credits-sync"


class CreditsSyncService:
    """
    Pushes each active account's cumulative billable credits for the current
    period to the credits meter.

    The meter aggregates with "last value wins", so every sync sends the
    running total rather than a delta.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: MeterEventQueue,
        metering: MeteringProvider,
        aggregator: UsageAggregator | None = None,
        settings: Settings = default_settings,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.metering = metering
        self.aggregator = aggregator or UsageAggregator()
        self.settings = settings

    async def active_accounts(self, now: datetime) -> list[tuple[Account, UsagePeriod]]:
        """Paid, unexpired accounts with a customer id and nonzero usage this period."""
        start, end = billing_period(now)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Account, UsagePeriod)
                .join(
                    UsagePeriod,
                    and_(
                        UsagePeriod.account_id == Account.id,
                        UsagePeriod.period_start == start,
                        UsagePeriod.period_end == end,
                    ),
                )
                .where(
                    Account.membership_tier.in_([MembershipTier.PRO, MembershipTier.ENTERPRISE]),
                    Account.membership_expires_at > now,
                    Account.external_customer_id.is_not(None),
                    UsagePeriod.raw_credits > 0,
                )
                .order_by(Account.created_at)
            )
            return [(account, period) for account, period in result.all()]

    async def sync_all(self, now: datetime | None = None) -> CreditsSyncResult:
        """
        Enqueue one credits event per active account.

        A failure for one account is logged and counted; the run continues.
        """
        now = now or datetime.utcnow()
        sync_ts = calendar.timegm(now.utctimetuple())
        result = CreditsSyncResult()

        candidates = await self.active_accounts(now)
        result.accounts = len(candidates)

        for account, period in candidates:
            try:
                credits = self.aggregator.billable_from_raw(period.raw_credits)
                job_id = await self.queue.enqueue(
                    self.settings.credits_meter_event_name,
                    account.external_customer_id,
                    credits,
                    timestamp=now,
                    idempotency_key=sync_idempotency_key(period.period_start, account.id, sync_ts),
                )
                if job_id is None:
                    result.skipped += 1
                    continue

                result.queued += 1
                metrics.credits_sync_events_total.inc()
                logger.debug(
                    "credits_sync_enqueued",
                    account_id=str(account.id),
                    credits=credits,
                    job_id=job_id,
                )
            except Exception as e:
                result.errors += 1
                logger.exception("credits_sync_account_failed", account_id=str(account.id), exc_info=e)

        logger.info(
            "credits_sync_completed",
            accounts=result.accounts,
            queued=result.queued,
            skipped=result.skipped,
            errors=result.errors,
        )
        return result

    async def verify_account(self, account_id: UUID, now: datetime | None = None) -> ReconciliationReport:
        """
        Compare local cumulative credits with what the credits meter holds.

        The latest summary in the period is the provider's value, matching
        the meter's last-value aggregation.

        Raises:
            AccountNotFoundError: If account doesn't exist
            ProviderError: If the provider cannot be queried
        """
        now = now or datetime.utcnow()
        start, end = billing_period(now)

        async with self.session_factory() as session:
            account = await session.get(Account, account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            result = await session.execute(
                select(UsagePeriod).where(
                    and_(
                        UsagePeriod.account_id == account_id,
                        UsagePeriod.period_start == start,
                        UsagePeriod.period_end == end,
                    )
                )
            )
            period = result.scalar_one_or_none()

        local_credits = self.aggregator.billable_from_raw(period.raw_credits) if period else 0

        provider_credits = 0
        if account.external_customer_id and self.settings.credits_meter_id:
            summaries = await self.metering.list_event_summaries(
                self.settings.credits_meter_id,
                account.external_customer_id,
                start,
                min(now, end),
            )
            if summaries:
                latest = max(summaries, key=lambda summary: summary.end_time)
                provider_credits = int(latest.aggregated_value)

        drift = local_credits - provider_credits
        report = ReconciliationReport(
            account_id=account_id,
            local_credits=local_credits,
            provider_credits=provider_credits,
            drift=drift,
            in_sync=drift == 0,
        )

        log = logger.info if report.in_sync else logger.warning
        log(
            "credits_reconciled",
            account_id=str(account_id),
            local_credits=local_credits,
            provider_credits=provider_credits,
            drift=drift,
        )
        return report
