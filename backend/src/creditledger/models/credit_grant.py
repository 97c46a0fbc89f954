"""Credit grant model for purchased and promotional credits."""
import enum

from sqlalchemy import Column, DateTime, Enum as SQLEnum, ForeignKey, Integer, String, Uuid

from creditledger.models.base import Base, CreditAmount, JSONType


class GrantCategory(enum.Enum):
    """Where the credits came from."""

    PAID = "paid"
    PROMOTIONAL = "promotional"


class GrantStatus(enum.Enum):
    """Grant lifecycle: pending -> applied, or pending -> voided."""

    PENDING = "pending"
    APPLIED = "applied"
    VOIDED = "voided"


class CreditGrant(Base):
    """
    A block of credits created by an external trigger (purchase, bonus, top-up).

    Applied to the account balance exactly once.
    """

    __tablename__ = "credit_grants"

    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    credits = Column(CreditAmount, nullable=False)
    category = Column(SQLEnum(GrantCategory), nullable=False)
    name = Column(String, nullable=False)
    status = Column(SQLEnum(GrantStatus), nullable=False, default=GrantStatus.PENDING, index=True)
    expires_at = Column(DateTime, nullable=True)
    applied_at = Column(DateTime, nullable=True)
    voided_at = Column(DateTime, nullable=True)
    external_grant_id = Column(String, nullable=True)  # Stripe credit grant / payment intent
    transaction_id = Column(Uuid(as_uuid=True), ForeignKey("credit_transactions.id"), nullable=True)
    details = Column("metadata", JSONType, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        """String representation."""
        return f"<CreditGrant(id={self.id}, credits={self.credits}, status={self.status.value})>"
