"""Service for purchased and promotional credit grants."""
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from creditledger.exceptions import AccountNotFoundError, InvalidStateTransitionError, ValidationError
from creditledger.models.account import Account
from creditledger.models.credit_grant import CreditGrant, GrantCategory, GrantStatus
from creditledger.models.credit_transaction import CreditTransactionType
from creditledger.schemas.ledger import GrantMetadata
from creditledger.services.credit_ledger import CreditLedger

logger = structlog.get_logger(__name__)

TRANSACTION_TYPES = {
    GrantCategory.PAID: CreditTransactionType.PURCHASE,
    GrantCategory.PROMOTIONAL: CreditTransactionType.PROMOTIONAL,
}


class CreditGrantService:
    """
    Grants are created by an external trigger and applied to the balance
    exactly once, landing in the purchased bucket.
    """

    def __init__(self, ledger: CreditLedger):
        """Initialize grant service with the ledger that owns balances."""
        self.ledger = ledger

    async def create_grant(
        self,
        account_id: UUID,
        credits: Decimal,
        category: GrantCategory,
        name: str,
        expires_at: datetime | None = None,
        external_grant_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> CreditGrant:
        """
        Create a pending grant.

        Raises:
            ValidationError: If credits is not positive
            AccountNotFoundError: If account doesn't exist
        """
        credits = Decimal(credits)
        if credits <= 0:
            raise ValidationError(f"Grant credits must be positive, got {credits}", {"credits": str(credits)})

        async def _create(session: AsyncSession) -> CreditGrant:
            account = await session.get(Account, account_id)
            if account is None:
                raise AccountNotFoundError(account_id)

            grant = CreditGrant(
                id=uuid4(),
                account_id=account_id,
                credits=credits,
                category=category,
                name=name,
                status=GrantStatus.PENDING,
                expires_at=expires_at,
                external_grant_id=external_grant_id,
                details=details or {},
            )
            session.add(grant)
            await session.flush()
            return grant

        grant = await self.ledger.run_in_transaction("create_grant", _create)
        logger.info(
            "credit_grant_created",
            grant_id=str(grant.id),
            account_id=str(account_id),
            credits=str(credits),
            category=category.value,
        )
        return grant

    async def apply_grant(
        self,
        grant_id: UUID,
        type: CreditTransactionType | None = None,
        metadata: Any = None,
        now: datetime | None = None,
    ) -> CreditGrant:
        """
        Apply a pending grant to its account balance.

        Applying an already applied grant returns it unchanged. The balance
        increment and the status change commit together.

        Args:
            grant_id: Grant UUID
            type: Transaction type override (e.g. AUTO_TOP_UP)
            metadata: Transaction metadata override
            now: Current time (defaults to utcnow)

        Raises:
            ValueError: If grant doesn't exist
            InvalidStateTransitionError: If grant is voided or expired
        """
        now = now or datetime.utcnow()

        async def _apply(session: AsyncSession) -> CreditGrant:
            result = await session.execute(select(CreditGrant).where(CreditGrant.id == grant_id).with_for_update())
            grant = result.scalar_one_or_none()
            if grant is None:
                raise ValueError(f"Credit grant {grant_id} not found")

            if grant.status == GrantStatus.APPLIED:
                return grant
            if grant.status == GrantStatus.VOIDED:
                raise InvalidStateTransitionError(f"Credit grant {grant_id} is voided")
            if grant.expires_at is not None and grant.expires_at <= now:
                raise InvalidStateTransitionError(f"Credit grant {grant_id} expired before it was applied")

            transaction = await self.ledger.add_in_session(
                session,
                grant.account_id,
                grant.credits,
                type or TRANSACTION_TYPES[grant.category],
                f"{grant.name} ({grant.credits} credits)",
                metadata or GrantMetadata(grant_id=grant.id, category=grant.category.value),
                bucket="purchased",
                now=now,
            )

            grant.status = GrantStatus.APPLIED
            grant.applied_at = now
            grant.transaction_id = transaction.id
            await session.flush()
            return grant

        grant = await self.ledger.run_in_transaction("apply_grant", _apply)
        logger.info(
            "credit_grant_applied",
            grant_id=str(grant.id),
            account_id=str(grant.account_id),
            credits=str(grant.credits),
        )
        return grant

    async def void_grant(self, grant_id: UUID, now: datetime | None = None) -> CreditGrant:
        """
        Void a grant before it is applied.

        Raises:
            ValueError: If grant doesn't exist
            InvalidStateTransitionError: If grant was already applied
        """
        now = now or datetime.utcnow()

        async def _void(session: AsyncSession) -> CreditGrant:
            result = await session.execute(select(CreditGrant).where(CreditGrant.id == grant_id).with_for_update())
            grant = result.scalar_one_or_none()
            if grant is None:
                raise ValueError(f"Credit grant {grant_id} not found")
            if grant.status == GrantStatus.APPLIED:
                raise InvalidStateTransitionError(f"Credit grant {grant_id} was already applied")
            if grant.status == GrantStatus.PENDING:
                grant.status = GrantStatus.VOIDED
                grant.voided_at = now
                await session.flush()
            return grant

        grant = await self.ledger.run_in_transaction("void_grant", _void)
        logger.info("credit_grant_voided", grant_id=str(grant.id), account_id=str(grant.account_id))
        return grant
