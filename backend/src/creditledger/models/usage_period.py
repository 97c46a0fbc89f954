"""Usage period model for metered resource consumption."""
import enum
from decimal import Decimal

from sqlalchemy import BigInteger, Column, DateTime, Enum as SQLEnum, ForeignKey, Integer, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from creditledger.models.base import Base, CreditAmount


class UsagePeriodStatus(enum.Enum):
    """
    Billing state of a period.

    PENDING -> CALCULATED -> REPORTED -> BILLED -> PAID
    """

    PENDING = "pending"
    CALCULATED = "calculated"
    REPORTED = "reported"
    BILLED = "billed"
    PAID = "paid"


class UsagePeriod(Base):
    """
    Raw resource counters and computed costs for one account billing cycle.

    One row per (account, period_start, period_end); rows are never deleted.
    """

    __tablename__ = "usage_periods"
    __table_args__ = (
        UniqueConstraint("account_id", "period_start", "period_end", name="uq_usage_period_account_window"),
    )

    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    status = Column(SQLEnum(UsagePeriodStatus), nullable=False, default=UsagePeriodStatus.PENDING, index=True)

    # Raw counters
    function_calls = Column(BigInteger, nullable=False, default=0)
    action_compute_ms = Column(BigInteger, nullable=False, default=0)
    database_bandwidth_bytes = Column(BigInteger, nullable=False, default=0)
    database_storage_bytes = Column(BigInteger, nullable=False, default=0)  # Peak
    file_bandwidth_bytes = Column(BigInteger, nullable=False, default=0)
    file_storage_bytes = Column(BigInteger, nullable=False, default=0)  # Peak
    vector_bandwidth_bytes = Column(BigInteger, nullable=False, default=0)
    vector_storage_bytes = Column(BigInteger, nullable=False, default=0)  # Peak

    # Computed costs in credits
    function_calls_cost = Column(CreditAmount, nullable=False, default=Decimal("0"))
    action_compute_cost = Column(CreditAmount, nullable=False, default=Decimal("0"))
    database_bandwidth_cost = Column(CreditAmount, nullable=False, default=Decimal("0"))
    database_storage_cost = Column(CreditAmount, nullable=False, default=Decimal("0"))
    file_bandwidth_cost = Column(CreditAmount, nullable=False, default=Decimal("0"))
    file_storage_cost = Column(CreditAmount, nullable=False, default=Decimal("0"))
    vector_bandwidth_cost = Column(CreditAmount, nullable=False, default=Decimal("0"))
    vector_storage_cost = Column(CreditAmount, nullable=False, default=Decimal("0"))

    raw_credits = Column(CreditAmount, nullable=False, default=Decimal("0"))  # Unrounded running total
    total_cost = Column(Integer, nullable=False, default=0)  # Billable credits

    calculated_at = Column(DateTime, nullable=True)
    reported_at = Column(DateTime, nullable=True)
    billed_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    account = relationship("Account", back_populates="usage_periods")

    def __repr__(self) -> str:
        """String representation."""
        return f"<UsagePeriod(id={self.id}, account_id={self.account_id}, status={self.status.value}, total_cost={self.total_cost})>"
