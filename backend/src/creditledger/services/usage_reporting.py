"""Usage period accumulation and reporting to the metering provider."""
from datetime import datetime
from uuid import UUID

import structlog
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from creditledger import metrics
from creditledger.config import Settings, settings as default_settings
from creditledger.database import run_with_retry
from creditledger.exceptions import AccountNotFoundError, InvalidStateTransitionError
from creditledger.models.account import Account
from creditledger.models.usage_period import UsagePeriod, UsagePeriodStatus
from creditledger.schemas.meter_event import MeterEventCreate
from creditledger.schemas.usage import ReportResult, UsageBreakdownResponse, UsageMetrics
from creditledger.schemas.usage import UsagePeriod as UsagePeriodSchema
from creditledger.services.meter_event_queue import MeterEventQueue
from creditledger.services.usage_aggregator import MeterEventName, UsageAggregator

logger = structlog.get_logger(__name__)

# Counters that accumulate; storage counters keep the peak instead
ADDITIVE_COUNTERS = (
    "function_calls",
    "action_compute_ms",
    "database_bandwidth_bytes",
    "file_bandwidth_bytes",
    "vector_bandwidth_bytes",
)
PEAK_COUNTERS = (
    "database_storage_bytes",
    "file_storage_bytes",
    "vector_storage_bytes",
)

COST_COLUMNS = {
    MeterEventName.FUNCTION_CALLS: "function_calls_cost",
    MeterEventName.ACTION_COMPUTE: "action_compute_cost",
    MeterEventName.DATABASE_BANDWIDTH: "database_bandwidth_cost",
    MeterEventName.DATABASE_STORAGE: "database_storage_cost",
    MeterEventName.FILE_BANDWIDTH: "file_bandwidth_cost",
    MeterEventName.FILE_STORAGE: "file_storage_cost",
    MeterEventName.VECTOR_BANDWIDTH: "vector_bandwidth_cost",
    MeterEventName.VECTOR_STORAGE: "vector_storage_cost",
}

FINAL_STATUSES = (UsagePeriodStatus.REPORTED, UsagePeriodStatus.BILLED, UsagePeriodStatus.PAID)

# Allowed externally driven transitions
TRANSITIONS = {
    UsagePeriodStatus.BILLED: UsagePeriodStatus.REPORTED,
    UsagePeriodStatus.PAID: UsagePeriodStatus.BILLED,
}


def billing_period(now: datetime) -> tuple[datetime, datetime]:
    """Calendar month (UTC) containing `now`, as [start, end)."""
    start = datetime(now.year, now.month, 1)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1)
    else:
        end = datetime(now.year, now.month + 1, 1)
    return start, end


class UsageReportingService:
    """
    Accumulates raw usage per billing period and reports it.

    Period state machine: PENDING -> CALCULATED -> REPORTED -> BILLED -> PAID.
    The last two transitions are driven by the billing provider.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: MeterEventQueue,
        aggregator: UsageAggregator | None = None,
        settings: Settings = default_settings,
    ):
        """Initialize reporting service."""
        self.session_factory = session_factory
        self.queue = queue
        self.aggregator = aggregator or UsageAggregator()
        self.settings = settings

    async def _transaction(self, operation: str, fn):  # noqa: ANN001, ANN202
        # A concurrent first touch of a period loses on the unique constraint; replay finds the row
        return await run_with_retry(
            self.session_factory,
            operation,
            fn,
            max_attempts=self.settings.ledger_max_retries,
            retry_on=(StaleDataError, IntegrityError),
        )

    async def _find_period(self, session: AsyncSession, account_id: UUID, now: datetime) -> UsagePeriod | None:
        start, end = billing_period(now)
        result = await session.execute(
            select(UsagePeriod)
            .where(
                and_(
                    UsagePeriod.account_id == account_id,
                    UsagePeriod.period_start == start,
                    UsagePeriod.period_end == end,
                )
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _get_or_create_period(self, session: AsyncSession, account_id: UUID, now: datetime) -> UsagePeriod:
        period = await self._find_period(session, account_id, now)
        if period is not None:
            return period

        start, end = billing_period(now)
        period = UsagePeriod(
            account_id=account_id,
            period_start=start,
            period_end=end,
            status=UsagePeriodStatus.PENDING,
        )
        for counter in ADDITIVE_COUNTERS + PEAK_COUNTERS:
            setattr(period, counter, 0)
        session.add(period)
        await session.flush()
        logger.info("usage_period_created", account_id=str(account_id), period_start=start.isoformat())
        return period

    def _apply_costs(self, period: UsagePeriod) -> UsageMetrics:
        """Recompute per-resource costs and the unrounded total from the counters."""
        usage = UsageMetrics.model_validate(period)
        for name, credits in self.aggregator.resource_credits(usage).items():
            setattr(period, COST_COLUMNS[name], credits)
        period.raw_credits = self.aggregator.raw_credits(usage)
        return usage

    async def record_usage(self, account_id: UUID, usage: UsageMetrics, now: datetime | None = None) -> UsagePeriod | None:
        """
        Add raw usage to the account's current period.

        Additive counters are incremented, storage counters keep their peak,
        and `raw_credits` is recomputed at full precision.

        Returns:
            Updated period, or None if the period was already reported

        Raises:
            AccountNotFoundError: If account doesn't exist
        """
        now = now or datetime.utcnow()

        async def _record(session: AsyncSession) -> UsagePeriod | None:
            account = await session.get(Account, account_id)
            if account is None:
                raise AccountNotFoundError(account_id)

            period = await self._get_or_create_period(session, account_id, now)
            if period.status in FINAL_STATUSES:
                logger.warning(
                    "usage_recorded_after_report",
                    account_id=str(account_id),
                    period_id=str(period.id),
                    status=period.status.value,
                )
                return None

            for counter in ADDITIVE_COUNTERS:
                setattr(period, counter, getattr(period, counter) + getattr(usage, counter))
            for counter in PEAK_COUNTERS:
                setattr(period, counter, max(getattr(period, counter), getattr(usage, counter)))

            self._apply_costs(period)
            if period.status == UsagePeriodStatus.CALCULATED:
                # New usage invalidates the calculated total
                period.status = UsagePeriodStatus.PENDING
                period.calculated_at = None

            await session.flush()
            return period

        period = await self._transaction("record_usage", _record)
        if period is not None:
            logger.debug(
                "usage_recorded",
                account_id=str(account_id),
                period_id=str(period.id),
                raw_credits=str(period.raw_credits),
            )
        return period

    async def calculate(self, account_id: UUID, now: datetime | None = None) -> UsagePeriod:
        """Compute the billable total of the current period and mark it CALCULATED."""
        now = now or datetime.utcnow()

        async def _calculate(session: AsyncSession) -> UsagePeriod:
            period = await self._get_or_create_period(session, account_id, now)
            if period.status == UsagePeriodStatus.PENDING:
                self._apply_costs(period)
                period.total_cost = self.aggregator.billable_from_raw(period.raw_credits)
                period.status = UsagePeriodStatus.CALCULATED
                period.calculated_at = now
                await session.flush()
            return period

        return await self._transaction("calculate_usage", _calculate)

    async def report_usage(self, account_id: UUID, now: datetime | None = None) -> ReportResult:
        """
        Report the current period to the metering provider.

        A period already REPORTED, BILLED or PAID returns immediately with
        queued=0. Otherwise one event per resource is enqueued, keyed by
        "{period_id}-{event_name}", so a repeated call never creates a second
        billable event even before the period is marked REPORTED.

        Raises:
            AccountNotFoundError: If account doesn't exist
        """
        now = now or datetime.utcnow()

        async with self.session_factory() as session:
            account = await session.get(Account, account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        period = await self.calculate(account_id, now)

        if period.status in FINAL_STATUSES:
            metrics.usage_reports_total.labels(result="already_reported").inc()
            logger.info(
                "usage_already_reported",
                account_id=str(account_id),
                period_id=str(period.id),
                status=period.status.value,
            )
            return ReportResult(period_id=period.id, status=period.status)

        units = self.aggregator.meter_units(UsageMetrics.model_validate(period))

        if not account.external_customer_id:
            metrics.usage_reports_total.labels(result="no_customer").inc()
            logger.warning("usage_report_skipped_no_customer", account_id=str(account_id), period_id=str(period.id))
            return ReportResult(period_id=period.id, status=period.status, skipped=len(units))

        events = [
            MeterEventCreate(
                event_name=event_name,
                external_customer_id=account.external_customer_id,
                value=value,
                idempotency_key=f"{period.id}-{event_name}",
            )
            for event_name, value in units.items()
            if value > 0
        ]
        skipped = len(units) - len(events)
        job_ids = await self.queue.enqueue_batch(events)

        period = await self._set_status(period.id, UsagePeriodStatus.REPORTED, now, allowed_from=(UsagePeriodStatus.CALCULATED,))

        metrics.usage_reports_total.labels(result="reported").inc()
        logger.info(
            "usage_reported",
            account_id=str(account_id),
            period_id=str(period.id),
            queued=len(job_ids),
            skipped=skipped,
            total_cost=period.total_cost,
        )
        return ReportResult(period_id=period.id, status=period.status, queued=len(job_ids), skipped=skipped, job_ids=job_ids)

    async def _set_status(
        self,
        period_id: UUID,
        status: UsagePeriodStatus,
        now: datetime,
        allowed_from: tuple[UsagePeriodStatus, ...],
    ) -> UsagePeriod:
        async def _update(session: AsyncSession) -> UsagePeriod:
            period = await session.get(UsagePeriod, period_id, with_for_update=True)
            if period is None:
                raise ValueError(f"Usage period {period_id} not found")
            if period.status == status:
                return period
            if period.status not in allowed_from:
                raise InvalidStateTransitionError(
                    f"Cannot move usage period from {period.status.value} to {status.value}",
                    {"period_id": str(period_id), "from": period.status.value, "to": status.value},
                )

            period.status = status
            timestamp_column = {
                UsagePeriodStatus.REPORTED: "reported_at",
                UsagePeriodStatus.BILLED: "billed_at",
                UsagePeriodStatus.PAID: "paid_at",
            }[status]
            setattr(period, timestamp_column, now)
            await session.flush()
            return period

        return await self._transaction(f"usage_period_{status.value}", _update)

    async def mark_billed(self, period_id: UUID, now: datetime | None = None) -> UsagePeriod:
        """
        Record that the provider invoiced a reported period.

        Raises:
            ValueError: If period doesn't exist
            InvalidStateTransitionError: If period is not REPORTED
        """
        return await self._set_status(period_id, UsagePeriodStatus.BILLED, now or datetime.utcnow(), (TRANSITIONS[UsagePeriodStatus.BILLED],))

    async def mark_paid(self, period_id: UUID, now: datetime | None = None) -> UsagePeriod:
        """
        Record that the invoice for a billed period was paid.

        Raises:
            ValueError: If period doesn't exist
            InvalidStateTransitionError: If period is not BILLED
        """
        return await self._set_status(period_id, UsagePeriodStatus.PAID, now or datetime.utcnow(), (TRANSITIONS[UsagePeriodStatus.PAID],))

    async def get_current_period(self, account_id: UUID, now: datetime | None = None) -> UsagePeriod | None:
        """Current period of an account, if any usage was recorded."""
        async with self.session_factory() as session:
            start, end = billing_period(now or datetime.utcnow())
            result = await session.execute(
                select(UsagePeriod).where(
                    and_(
                        UsagePeriod.account_id == account_id,
                        UsagePeriod.period_start == start,
                        UsagePeriod.period_end == end,
                    )
                )
            )
            return result.scalar_one_or_none()

    async def get_breakdown(self, account_id: UUID, now: datetime | None = None) -> UsageBreakdownResponse:
        """Current period with its per-resource credit breakdown."""
        period = await self.get_current_period(account_id, now)
        usage = UsageMetrics.model_validate(period) if period else UsageMetrics()
        return UsageBreakdownResponse(
            period=UsagePeriodSchema.model_validate(period) if period else None,
            breakdown=self.aggregator.breakdown(usage),
        )
