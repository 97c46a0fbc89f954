"""Credit ledger: the single authority for mutating account balances."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, TypeVar
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditledger import metrics
from creditledger.config import Settings, settings as default_settings
from creditledger.database import run_with_retry
from creditledger.exceptions import (
    AccountNotFoundError,
    InsufficientCreditsError,
    MinimumBalanceViolationError,
    ValidationError,
)
from creditledger.models.account import Account, MembershipTier
from creditledger.models.credit_transaction import CreditTransaction, CreditTransactionType
from creditledger.schemas.ledger import (
    AccountBalance,
    AffordabilityCheck,
    AllocationMetadata,
    DeductionMetadata,
    DeductionResult,
    ExpirationMetadata,
    dump_metadata,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ZERO = Decimal("0")
CREDIT_QUANTUM = Decimal("0.000001")

BUCKETS = ("base_plan", "purchased")


def quantize(value: Decimal) -> Decimal:
    """Round to the stored credit precision."""
    return Decimal(value).quantize(CREDIT_QUANTUM)


class CreditLedger:
    """
    Transactional credit balance with carry-over, monthly allocation and
    minimum-balance protection.

    Every public operation runs in its own database transaction. The account
    row is read with SELECT ... FOR UPDATE where the engine supports it and
    written with a version check, so two concurrent writers can never both
    spend the same credits: the loser gets StaleDataError and the whole
    operation is replayed against fresh state.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings = default_settings,
    ):
        """Initialize ledger with a session factory and settings."""
        self.session_factory = session_factory
        self.settings = settings

    @property
    def minimum_balance(self) -> Decimal:
        """Protected floor a deduction may never cross."""
        return self.settings.minimum_balance

    def monthly_allocation(self, tier: MembershipTier) -> Decimal:
        """Credits granted per month for a tier. Enterprise allocations are contract-based."""
        if tier == MembershipTier.PRO:
            return self.settings.monthly_pro_credits
        return ZERO

    async def run_in_transaction(self, operation: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """
        Run `fn` in a fresh transaction, replaying it when it loses a race.

        Args:
            operation: Name used in logs and metrics
            fn: Coroutine function receiving the session

        Returns:
            Whatever `fn` returns once its transaction committed
        """
        return await run_with_retry(
            self.session_factory,
            operation,
            fn,
            max_attempts=self.settings.ledger_max_retries,
            on_conflict=lambda op: metrics.ledger_write_conflicts_total.labels(operation=op).inc(),
        )

    async def _load_account(self, session: AsyncSession, account_id: UUID, lock: bool = True) -> Account | None:
        query = select(Account).where(Account.id == account_id)
        if lock:
            query = query.with_for_update()
        result = await session.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    def _carry_over_expired(account: Account, now: datetime) -> bool:
        return (
            account.carry_over_credits > 0
            and account.carry_over_expires_at is not None
            and account.carry_over_expires_at <= now
        )

    def _expire_carry_over(self, session: AsyncSession, account: Account, now: datetime) -> Decimal:
        """
        Clear expired carry-over and record the forfeiture.

        Runs inside the caller's transaction so stale carry-over is never
        spendable. Returns the amount removed from the balance.
        """
        if not self._carry_over_expired(account, now):
            return ZERO

        expired = min(account.carry_over_credits, account.balance)
        expired_at = account.carry_over_expires_at
        account.balance = quantize(account.balance - expired)
        account.carry_over_credits = ZERO
        account.carry_over_expires_at = None

        session.add(
            CreditTransaction(
                id=uuid4(),
                account_id=account.id,
                amount=-expired,
                type=CreditTransactionType.EXPIRATION,
                description=f"Carry-over credits expired ({expired} credits)",
                balance_after=account.balance,
                details=ExpirationMetadata(expired_credits=expired, expired_at=expired_at).model_dump(mode="json"),
            )
        )

        metrics.carry_over_expired_total.inc(float(expired))
        logger.info(
            "carry_over_expired",
            account_id=str(account.id),
            expired_credits=str(expired),
            balance=str(account.balance),
        )
        return expired

    async def deduct(
        self,
        account_id: UUID,
        amount: Decimal,
        type: CreditTransactionType,
        description: str,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> DeductionResult:
        """
        Deduct credits from an account.

        Carry-over credits are consumed first, then base plan, then purchased
        credits. Expired carry-over is cleared in the same transaction before
        any check.

        Args:
            account_id: Account UUID
            amount: Credits to deduct (0 is a no-op)
            type: Transaction type
            description: Human-readable reason
            metadata: Caller context stored with the transaction
            now: Current time (defaults to utcnow)

        Returns:
            DeductionResult; on failure `error` holds InsufficientCreditsError,
            MinimumBalanceViolationError or AccountNotFoundError

        Raises:
            ValidationError: If amount is negative
        """
        amount = Decimal(amount)
        if amount < 0:
            raise ValidationError(f"Deduction amount must not be negative, got {amount}", {"amount": str(amount)})

        # Amounts below the stored precision round to zero
        amount = quantize(amount)
        if amount == 0:
            logger.info("credit_deduction_skipped", account_id=str(account_id), reason="zero_amount")
            return DeductionResult(ok=True)

        now = now or datetime.utcnow()

        async def _deduct(session: AsyncSession) -> DeductionResult:
            account = await self._load_account(session, account_id)
            if account is None:
                return DeductionResult.failure(AccountNotFoundError(account_id))

            expired = self._expire_carry_over(session, account, now)
            balance_before = account.balance

            if balance_before < amount:
                return DeductionResult.failure(InsufficientCreditsError(amount, balance_before), balance_before, expired)

            if balance_before - amount < self.minimum_balance:
                return DeductionResult.failure(
                    MinimumBalanceViolationError(amount, balance_before, self.minimum_balance),
                    balance_before,
                    expired,
                )

            from_carry_over = min(amount, account.carry_over_credits)
            remaining = amount - from_carry_over
            from_base_plan = min(remaining, account.base_plan_credits)
            remaining -= from_base_plan
            from_purchased = min(remaining, account.purchased_credits)

            account.carry_over_credits = quantize(account.carry_over_credits - from_carry_over)
            account.base_plan_credits = quantize(account.base_plan_credits - from_base_plan)
            account.purchased_credits = quantize(account.purchased_credits - from_purchased)
            account.balance = quantize(balance_before - amount)
            account.lifetime_credits_used = quantize(account.lifetime_credits_used + amount)
            account.monthly_credits_used = quantize(account.monthly_credits_used + amount)

            transaction = CreditTransaction(
                id=uuid4(),
                account_id=account.id,
                amount=-amount,
                type=type,
                description=description,
                balance_after=account.balance,
                details=DeductionMetadata(
                    carry_over_deducted=from_carry_over,
                    base_plan_deducted=from_base_plan,
                    purchased_deducted=from_purchased,
                    carry_over_remaining=account.carry_over_credits,
                    base_plan_remaining=account.base_plan_credits,
                    purchased_remaining=account.purchased_credits,
                    context=metadata or {},
                ).model_dump(mode="json"),
            )
            session.add(transaction)
            await session.flush()

            return DeductionResult(
                ok=True,
                transaction_id=transaction.id,
                balance_before=balance_before,
                balance_after=account.balance,
                carry_over_deducted=from_carry_over,
                base_plan_deducted=from_base_plan,
                purchased_deducted=from_purchased,
                expired_carry_over=expired,
            )

        result = await self.run_in_transaction("deduct", _deduct)

        if result.ok:
            metrics.credits_deducted_total.labels(type=type.value).inc(float(amount))
            logger.info(
                "credits_deducted",
                account_id=str(account_id),
                amount=str(amount),
                type=type.value,
                balance_after=str(result.balance_after),
                carry_over_deducted=str(result.carry_over_deducted),
                base_plan_deducted=str(result.base_plan_deducted),
                purchased_deducted=str(result.purchased_deducted),
            )
        else:
            metrics.credit_deductions_rejected_total.labels(reason=result.error.code).inc()
            logger.warning(
                "credit_deduction_rejected",
                account_id=str(account_id),
                amount=str(amount),
                reason=result.error.code,
                balance=str(result.balance_before),
            )

        return result

    async def add_in_session(
        self,
        session: AsyncSession,
        account_id: UUID,
        amount: Decimal,
        type: CreditTransactionType,
        description: str,
        metadata: BaseModel | dict[str, Any] | None = None,
        bucket: str = "base_plan",
        now: datetime | None = None,
    ) -> CreditTransaction:
        """
        Credit an account inside a transaction owned by the caller.

        Used by services that must change other rows atomically with the
        balance (e.g. marking a grant applied).
        """
        amount = Decimal(amount)
        if amount < 0:
            raise ValidationError(f"Credit amount must not be negative, got {amount}", {"amount": str(amount)})
        if bucket not in BUCKETS:
            raise ValidationError(f"Unknown credit bucket {bucket!r}", {"bucket": bucket})

        amount = quantize(amount)
        account = await self._load_account(session, account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        self._expire_carry_over(session, account, now or datetime.utcnow())

        if bucket == "purchased":
            account.purchased_credits = quantize(account.purchased_credits + amount)
        else:
            account.base_plan_credits = quantize(account.base_plan_credits + amount)
        account.balance = quantize(account.balance + amount)

        transaction = CreditTransaction(
            id=uuid4(),
            account_id=account.id,
            amount=amount,
            type=type,
            description=description,
            balance_after=account.balance,
            details=dump_metadata(metadata, bucket=bucket),
        )
        session.add(transaction)
        await session.flush()
        return transaction

    async def add(
        self,
        account_id: UUID,
        amount: Decimal,
        type: CreditTransactionType,
        description: str,
        metadata: BaseModel | dict[str, Any] | None = None,
        bucket: str = "base_plan",
    ) -> CreditTransaction:
        """
        Add credits to an account.

        Args:
            account_id: Account UUID
            amount: Credits to add (must not be negative)
            type: Transaction type
            description: Human-readable reason
            metadata: Transaction metadata (tagged model or plain context dict)
            bucket: "base_plan" (default) or "purchased"

        Returns:
            Created transaction

        Raises:
            ValidationError: If amount is negative or bucket unknown
            AccountNotFoundError: If account doesn't exist
        """
        if Decimal(amount) < 0:
            raise ValidationError(f"Credit amount must not be negative, got {amount}", {"amount": str(amount)})

        transaction = await self.run_in_transaction(
            "add",
            lambda session: self.add_in_session(session, account_id, amount, type, description, metadata, bucket),
        )

        metrics.credits_added_total.labels(type=type.value).inc(float(transaction.amount))
        logger.info(
            "credits_added",
            account_id=str(account_id),
            amount=str(transaction.amount),
            type=type.value,
            bucket=bucket,
            balance_after=str(transaction.balance_after),
        )
        return transaction

    async def can_afford(self, account_id: UUID, amount: Decimal, now: datetime | None = None) -> AffordabilityCheck:
        """
        Check whether a deduction would succeed, without writing anything.

        When only the minimum balance rule blocks the deduction,
        `max_affordable` tells the caller how much it could charge instead.
        """
        amount = Decimal(amount)
        now = now or datetime.utcnow()

        async with self.session_factory() as session:
            account = await self._load_account(session, account_id, lock=False)

        if account is None:
            return AffordabilityCheck(
                can_afford=False,
                reason="Account not found",
                current_balance=ZERO,
                minimum_balance=self.minimum_balance,
            )

        balance = account.balance
        if self._carry_over_expired(account, now):
            balance = balance - min(account.carry_over_credits, balance)

        if amount < 0:
            return AffordabilityCheck(
                can_afford=False,
                reason="Amount must not be negative",
                current_balance=balance,
                minimum_balance=self.minimum_balance,
            )

        if balance < amount:
            return AffordabilityCheck(
                can_afford=False,
                reason=f"Insufficient credits: need {amount}, have {balance}",
                current_balance=balance,
                minimum_balance=self.minimum_balance,
            )

        if amount > 0 and balance - amount < self.minimum_balance:
            return AffordabilityCheck(
                can_afford=False,
                reason=f"Must keep a minimum balance of {self.minimum_balance} credits",
                current_balance=balance,
                max_affordable=max(ZERO, balance - self.minimum_balance),
                minimum_balance=self.minimum_balance,
            )

        return AffordabilityCheck(can_afford=True, current_balance=balance, minimum_balance=self.minimum_balance)

    async def get_balance(self, account_id: UUID, now: datetime | None = None) -> AccountBalance:
        """
        Read the balance, applying pending monthly allocation and expiry.

        A member on a paid tier whose last reset lies in an earlier month gets
        the tier's allocation once; the write is version-checked, so a
        concurrent read in the same month replays, sees the reset and grants
        nothing.

        Raises:
            AccountNotFoundError: If account doesn't exist
        """
        now = now or datetime.utcnow()

        async def _read(session: AsyncSession) -> AccountBalance:
            account = await self._load_account(session, account_id)
            if account is None:
                raise AccountNotFoundError(account_id)

            expired = self._expire_carry_over(session, account, now)
            allocated = self._allocate_monthly(session, account, now)
            if expired or allocated:
                await session.flush()

            return AccountBalance(
                account_id=account.id,
                balance=account.balance,
                base_plan_credits=account.base_plan_credits,
                carry_over_credits=account.carry_over_credits,
                carry_over_expires_at=account.carry_over_expires_at,
                purchased_credits=account.purchased_credits,
                membership_tier=account.membership_tier.value,
                last_credit_reset=account.last_credit_reset,
                monthly_credits_used=account.monthly_credits_used,
                lifetime_credits_used=account.lifetime_credits_used,
                allocated=allocated,
                expired=expired,
            )

        return await self.run_in_transaction("get_balance", _read)

    def _allocate_monthly(self, session: AsyncSession, account: Account, now: datetime) -> Decimal:
        last_reset = account.last_credit_reset
        if last_reset is not None and (last_reset.year, last_reset.month) == (now.year, now.month):
            return ZERO
        if not account.has_active_membership(now):
            return ZERO

        allocation = self.monthly_allocation(account.membership_tier)
        if allocation <= 0:
            return ZERO

        account.base_plan_credits = quantize(account.base_plan_credits + allocation)
        account.balance = quantize(account.balance + allocation)
        account.monthly_credits_used = ZERO
        account.last_credit_reset = now

        session.add(
            CreditTransaction(
                id=uuid4(),
                account_id=account.id,
                amount=allocation,
                type=CreditTransactionType.MONTHLY_ALLOCATION,
                description=f"Monthly {account.membership_tier.value} credit allocation ({allocation} credits)",
                balance_after=account.balance,
                details=AllocationMetadata(
                    tier=account.membership_tier.value,
                    period=now.strftime("%Y-%m"),
                ).model_dump(mode="json"),
            )
        )

        metrics.monthly_allocations_total.labels(tier=account.membership_tier.value).inc()
        logger.info(
            "monthly_credits_allocated",
            account_id=str(account.id),
            tier=account.membership_tier.value,
            credits=str(allocation),
            balance=str(account.balance),
        )
        return allocation

    async def grant_carry_over(self, account_id: UUID, credits: Decimal, expires_at: datetime) -> AccountBalance:
        """
        Move unused base plan credits into the carry-over bucket.

        Used at billing-cycle rollover. The balance is unchanged, so no
        transaction is recorded.

        Raises:
            ValidationError: If credits is negative or exceeds the base plan bucket
            AccountNotFoundError: If account doesn't exist
        """
        credits = quantize(Decimal(credits))
        if credits < 0:
            raise ValidationError(f"Carry-over must not be negative, got {credits}", {"credits": str(credits)})

        async def _grant(session: AsyncSession) -> AccountBalance:
            account = await self._load_account(session, account_id)
            if account is None:
                raise AccountNotFoundError(account_id)

            if credits > account.base_plan_credits:
                raise ValidationError(
                    f"Carry-over {credits} exceeds base plan credits {account.base_plan_credits}",
                    {"credits": str(credits), "base_plan_credits": str(account.base_plan_credits)},
                )

            account.base_plan_credits = quantize(account.base_plan_credits - credits)
            account.carry_over_credits = quantize(account.carry_over_credits + credits)
            account.carry_over_expires_at = expires_at
            await session.flush()

            return AccountBalance(
                account_id=account.id,
                balance=account.balance,
                base_plan_credits=account.base_plan_credits,
                carry_over_credits=account.carry_over_credits,
                carry_over_expires_at=account.carry_over_expires_at,
                purchased_credits=account.purchased_credits,
                membership_tier=account.membership_tier.value,
                last_credit_reset=account.last_credit_reset,
                monthly_credits_used=account.monthly_credits_used,
                lifetime_credits_used=account.lifetime_credits_used,
            )

        balance = await self.run_in_transaction("grant_carry_over", _grant)
        logger.info(
            "carry_over_granted",
            account_id=str(account_id),
            credits=str(credits),
            expires_at=expires_at.isoformat(),
        )
        return balance

    async def list_transactions(
        self,
        account_id: UUID,
        page: int = 1,
        page_size: int = 50,
        type: CreditTransactionType | None = None,
    ) -> tuple[list[CreditTransaction], int]:
        """
        List an account's transactions, newest first.

        Returns:
            Tuple of (transactions list, total count)
        """
        conditions = [CreditTransaction.account_id == account_id]
        if type:
            conditions.append(CreditTransaction.type == type)

        async with self.session_factory() as session:
            count_result = await session.execute(
                select(func.count()).select_from(CreditTransaction).where(and_(*conditions))
            )
            total = count_result.scalar_one()

            result = await session.execute(
                select(CreditTransaction)
                .where(and_(*conditions))
                .order_by(CreditTransaction.created_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            return list(result.scalars().all()), total
