"""Automatic credit purchases when a balance runs low."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditledger import metrics
from creditledger.adapters.interfaces import PaymentProvider
from creditledger.config import Settings, settings as default_settings
from creditledger.exceptions import AccountNotFoundError, ProviderError, ValidationError
from creditledger.models.account import Account
from creditledger.models.auto_top_up import AutoTopUpConfig
from creditledger.models.credit_grant import GrantCategory
from creditledger.models.credit_transaction import CreditTransactionType
from creditledger.schemas.auto_top_up import AutoTopUpConfigUpdate, AutoTopUpRunResult, TopUpResult
from creditledger.schemas.ledger import TopUpMetadata
from creditledger.services.credit_grant_service import CreditGrantService
from creditledger.services.credit_ledger import CreditLedger
from creditledger.services.usage_reporting import billing_period

logger = structlog.get_logger(__name__)


def top_up_idempotency_key(config_id: UUID, now: datetime, top_up_number: int) -> str:
    return f"auto-top-up-{config_id}-{now:%Y-%m}-{top_up_number}"


class AutoTopUpService:
    """
    Charges a saved payment method and grants paid credits when an account's
    balance drops below its configured threshold.

    Limits: `max_monthly_top_ups` per calendar month, and a pause after
    `auto_top_up_max_consecutive_failures` failed charges.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: CreditLedger,
        grants: CreditGrantService,
        payments: PaymentProvider,
        settings: Settings = default_settings,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.grants = grants
        self.payments = payments
        self.settings = settings

    async def configure(self, account_id: UUID, data: AutoTopUpConfigUpdate) -> AutoTopUpConfig:
        """
        Create or replace an account's auto top-up configuration.

        Re-configuring clears the failure pause.

        Raises:
            ValidationError: If top_up_credits is below the minimum purchase
            AccountNotFoundError: If account doesn't exist
        """
        if data.top_up_credits < self.settings.auto_top_up_min_credits:
            raise ValidationError(
                f"Minimum top-up amount is {self.settings.auto_top_up_min_credits} credits",
                {"top_up_credits": data.top_up_credits},
            )

        async def _configure(session: AsyncSession) -> AutoTopUpConfig:
            account = await session.get(Account, account_id)
            if account is None:
                raise AccountNotFoundError(account_id)

            result = await session.execute(select(AutoTopUpConfig).where(AutoTopUpConfig.account_id == account_id))
            config = result.scalar_one_or_none()
            if config is None:
                config = AutoTopUpConfig(id=uuid4(), account_id=account_id, top_ups_this_month=0)
                session.add(config)

            for field, value in data.model_dump().items():
                setattr(config, field, value)
            config.consecutive_failures = 0
            config.last_top_up_error = None
            await session.flush()
            return config

        config = await self.ledger.run_in_transaction("configure_auto_top_up", _configure)
        logger.info(
            "auto_top_up_configured",
            account_id=str(account_id),
            enabled=config.enabled,
            threshold_credits=config.threshold_credits,
            top_up_credits=config.top_up_credits,
        )
        return config

    async def get_config(self, account_id: UUID) -> AutoTopUpConfig | None:
        async with self.session_factory() as session:
            result = await session.execute(select(AutoTopUpConfig).where(AutoTopUpConfig.account_id == account_id))
            return result.scalar_one_or_none()

    async def disable(self, account_id: UUID) -> AutoTopUpConfig | None:
        """Turn auto top-up off. Returns None if the account never configured it."""

        async def _disable(session: AsyncSession) -> AutoTopUpConfig | None:
            result = await session.execute(select(AutoTopUpConfig).where(AutoTopUpConfig.account_id == account_id))
            config = result.scalar_one_or_none()
            if config is not None:
                config.enabled = False
                await session.flush()
            return config

        config = await self.ledger.run_in_transaction("disable_auto_top_up", _disable)
        if config is not None:
            logger.info("auto_top_up_disabled", account_id=str(account_id))
        return config

    async def reset_monthly_counters(self, now: datetime) -> int:
        """Zero `top_ups_this_month` for configs not reset since the month began."""
        month_start, _ = billing_period(now)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(AutoTopUpConfig)
                    .where(
                        or_(
                            AutoTopUpConfig.monthly_reset_at.is_(None),
                            AutoTopUpConfig.monthly_reset_at < month_start,
                        ),
                        AutoTopUpConfig.top_ups_this_month > 0,
                    )
                    .values(top_ups_this_month=0, monthly_reset_at=now)
                )
        if result.rowcount:
            logger.info("auto_top_up_counters_reset", count=result.rowcount)
        return result.rowcount

    async def run(self, now: datetime | None = None) -> AutoTopUpRunResult:
        """Check every eligible configuration once."""
        now = now or datetime.utcnow()
        await self.reset_monthly_counters(now)

        async with self.session_factory() as session:
            result = await session.execute(
                select(AutoTopUpConfig.account_id).where(
                    AutoTopUpConfig.enabled.is_(True),
                    AutoTopUpConfig.payment_method_id.is_not(None),
                    AutoTopUpConfig.consecutive_failures < self.settings.auto_top_up_max_consecutive_failures,
                    AutoTopUpConfig.top_ups_this_month < AutoTopUpConfig.max_monthly_top_ups,
                )
            )
            account_ids = list(result.scalars().all())

        summary = AutoTopUpRunResult(checked=len(account_ids))
        for account_id in account_ids:
            outcome = await self.check_and_top_up(account_id, now)
            if outcome is None:
                continue
            summary.triggered += 1
            if outcome.success:
                summary.succeeded += 1
            else:
                summary.failed += 1

        logger.info(
            "auto_top_up_run_completed",
            checked=summary.checked,
            triggered=summary.triggered,
            succeeded=summary.succeeded,
            failed=summary.failed,
        )
        return summary

    async def _record(self, config_id: UUID, **values) -> None:
        async def _update(session: AsyncSession) -> None:
            config = await session.get(AutoTopUpConfig, config_id, with_for_update=True)
            for field, value in values.items():
                setattr(config, field, value)
            await session.flush()

        await self.ledger.run_in_transaction("record_auto_top_up", _update)

    async def check_and_top_up(self, account_id: UUID, now: datetime | None = None) -> TopUpResult | None:
        """
        Top up one account if it is eligible and below its threshold.

        Returns:
            Outcome of the attempt, or None when no top-up was due
        """
        now = now or datetime.utcnow()

        async with self.session_factory() as session:
            result = await session.execute(select(AutoTopUpConfig).where(AutoTopUpConfig.account_id == account_id))
            config = result.scalar_one_or_none()
            account = await session.get(Account, account_id)

        if config is None or account is None:
            return None
        if not config.enabled or not config.payment_method_id:
            return None
        if not account.external_customer_id:
            logger.warning("auto_top_up_skipped_no_customer", account_id=str(account_id))
            return None
        if config.top_ups_this_month >= config.max_monthly_top_ups:
            logger.info(
                "auto_top_up_monthly_limit_reached",
                account_id=str(account_id),
                top_ups_this_month=config.top_ups_this_month,
            )
            return None
        if config.consecutive_failures >= self.settings.auto_top_up_max_consecutive_failures:
            return None

        balance = await self.ledger.get_balance(account_id, now=now)
        if balance.balance >= Decimal(config.threshold_credits):
            return None

        top_up_number = config.top_ups_this_month + 1
        credits = config.top_up_credits
        logger.info(
            "auto_top_up_started",
            account_id=str(account_id),
            balance=str(balance.balance),
            threshold_credits=config.threshold_credits,
            top_up_credits=credits,
        )

        try:
            charge = await self.payments.charge(
                customer_id=account.external_customer_id,
                payment_method_id=config.payment_method_id,
                amount_cents=credits,
                idempotency_key=top_up_idempotency_key(config.id, now, top_up_number),
                description=f"Auto top-up: {credits} credits",
                metadata={"account_id": str(account_id), "type": "auto_top_up", "credits": str(credits)},
            )
        except ProviderError as e:
            await self._record(
                config.id,
                consecutive_failures=config.consecutive_failures + 1,
                last_failure_at=now,
                last_top_up_error=e.message,
            )
            metrics.auto_top_ups_total.labels(outcome="payment_failed").inc()
            logger.warning(
                "auto_top_up_payment_failed",
                account_id=str(account_id),
                error=e.message,
                code=e.code,
                consecutive_failures=config.consecutive_failures + 1,
            )
            return TopUpResult(account_id=account_id, success=False, error=e.message)

        try:
            grant = await self.grants.create_grant(
                account_id,
                Decimal(credits),
                GrantCategory.PAID,
                f"Auto Top-Up - {credits} credits",
                details={"payment_id": charge.id, "auto_top_up": True},
            )
            await self.grants.apply_grant(
                grant.id,
                type=CreditTransactionType.AUTO_TOP_UP,
                metadata=TopUpMetadata(
                    config_id=config.id,
                    grant_id=grant.id,
                    payment_id=charge.id,
                    top_up_number=top_up_number,
                ),
                now=now,
            )
        except Exception as e:
            # Money was taken but no credits landed: the monthly counter stays as is
            error = f"Payment succeeded ({charge.id}) but credit grant failed: {e}. Manual intervention required."
            await self._record(config.id, needs_manual_review=True, last_failure_at=now, last_top_up_error=error)
            metrics.auto_top_ups_total.labels(outcome="grant_failed").inc()
            logger.exception(
                "auto_top_up_grant_failed",
                account_id=str(account_id),
                payment_id=charge.id,
                credits=credits,
                exc_info=e,
            )
            return TopUpResult(account_id=account_id, success=False, payment_id=charge.id, error=error)

        await self._record(
            config.id,
            top_ups_this_month=top_up_number,
            monthly_reset_at=config.monthly_reset_at or now,
            consecutive_failures=0,
            last_top_up_at=now,
            last_top_up_amount=credits,
            last_top_up_error=None,
        )
        metrics.auto_top_ups_total.labels(outcome="succeeded").inc()
        logger.info(
            "auto_top_up_succeeded",
            account_id=str(account_id),
            credits=credits,
            payment_id=charge.id,
            top_up_number=top_up_number,
        )
        return TopUpResult(account_id=account_id, success=True, credits_added=credits, payment_id=charge.id)
