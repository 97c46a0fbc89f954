"""Append-only credit transaction log."""
import enum

from sqlalchemy import Column, Enum as SQLEnum, ForeignKey, String, Uuid
from sqlalchemy.orm import relationship

from creditledger.models.base import Base, CreditAmount, JSONType


class CreditTransactionType(enum.Enum):
    """Reason a balance changed."""

    USAGE = "usage"
    DEPLOYMENT = "deployment"
    AI_GENERATION = "ai_generation"
    MONTHLY_ALLOCATION = "monthly_allocation"
    PURCHASE = "purchase"
    PROMOTIONAL = "promotional"
    AUTO_TOP_UP = "auto_top_up"
    REFUND = "refund"
    EXPIRATION = "expiration"
    ADJUSTMENT = "adjustment"


class CreditTransaction(Base):
    """
    One signed balance movement.

    Rows are never updated or deleted: the sum of an account's transactions
    equals its balance minus its initial value.
    """

    __tablename__ = "credit_transactions"

    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(CreditAmount, nullable=False)  # Negative for deductions
    type = Column(SQLEnum(CreditTransactionType), nullable=False, index=True)
    description = Column(String, nullable=False)
    balance_after = Column(CreditAmount, nullable=False)
    details = Column("metadata", JSONType, nullable=False, default=dict)

    # Relationships
    account = relationship("Account", back_populates="transactions")

    def __repr__(self) -> str:
        """String representation."""
        return f"<CreditTransaction(id={self.id}, account_id={self.account_id}, amount={self.amount}, type={self.type.value})>"
