"""Account model holding the spendable credit balance."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, Column, DateTime, Enum as SQLEnum, Integer, String
from sqlalchemy.orm import relationship

from creditledger.models.base import Base, CreditAmount


class MembershipTier(enum.Enum):
    """Subscription tier of an account."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class Account(Base):
    """
    Credit account.

    `balance` is the authoritative spendable amount. The three buckets
    (carry-over, base plan, purchased) always sum to it and decide the
    order in which a deduction consumes credits.

    Every UPDATE is guarded by `version`; a writer that loses a race gets
    StaleDataError instead of overwriting a concurrent change.
    """

    __tablename__ = "accounts"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),)

    name = Column(String, nullable=False)
    external_customer_id = Column(String, nullable=True, unique=True, index=True)  # Stripe customer ID
    membership_tier = Column(SQLEnum(MembershipTier), nullable=False, default=MembershipTier.FREE)
    membership_expires_at = Column(DateTime, nullable=True)

    balance = Column(CreditAmount, nullable=False, default=Decimal("0"))
    base_plan_credits = Column(CreditAmount, nullable=False, default=Decimal("0"))
    carry_over_credits = Column(CreditAmount, nullable=False, default=Decimal("0"))
    carry_over_expires_at = Column(DateTime, nullable=True)
    purchased_credits = Column(CreditAmount, nullable=False, default=Decimal("0"))

    last_credit_reset = Column(DateTime, nullable=True)
    monthly_credits_used = Column(CreditAmount, nullable=False, default=Decimal("0"))
    lifetime_credits_used = Column(CreditAmount, nullable=False, default=Decimal("0"))

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    transactions = relationship("CreditTransaction", back_populates="account", lazy="raise")
    usage_periods = relationship("UsagePeriod", back_populates="account", lazy="raise")
    auto_top_up_config = relationship("AutoTopUpConfig", back_populates="account", uselist=False, lazy="raise")

    def has_active_membership(self, now: datetime) -> bool:
        """Paid tiers count as active until their expiry."""
        return (
            self.membership_tier in (MembershipTier.PRO, MembershipTier.ENTERPRISE)
            and self.membership_expires_at is not None
            and self.membership_expires_at > now
        )

    def __repr__(self) -> str:
        """String representation."""
        return f"<Account(id={self.id}, balance={self.balance}, tier={self.membership_tier.value})>"
