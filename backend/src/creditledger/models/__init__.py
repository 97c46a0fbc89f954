"""SQLAlchemy ORM models for the credit ledger."""
# Import all models here to ensure they are registered with Alembic

from creditledger.models.base import Base
from creditledger.models.account import Account, MembershipTier
from creditledger.models.credit_transaction import CreditTransaction, CreditTransactionType
from creditledger.models.credit_grant import CreditGrant, GrantCategory, GrantStatus
from creditledger.models.usage_period import UsagePeriod, UsagePeriodStatus
from creditledger.models.meter_event_job import MeterEventJob, MeterEventJobStatus, MeterEventOutcome
from creditledger.models.auto_top_up import AutoTopUpConfig

__all__ = [
    "Base",
    "Account",
    "MembershipTier",
    "CreditTransaction",
    "CreditTransactionType",
    "CreditGrant",
    "GrantCategory",
    "GrantStatus",
    "UsagePeriod",
    "UsagePeriodStatus",
    "MeterEventJob",
    "MeterEventJobStatus",
    "MeterEventOutcome",
    "AutoTopUpConfig",
]
