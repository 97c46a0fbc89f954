"""Auto top-up configuration model."""
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import relationship

from creditledger.models.base import Base


class AutoTopUpConfig(Base):
    """
    Automatic credit purchase when the balance drops below a threshold.

    Owned by the account holder; read by the scheduled top-up job.
    """

    __tablename__ = "auto_top_up_configs"

    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, unique=True)
    enabled = Column(Boolean, nullable=False, default=False)
    threshold_credits = Column(Integer, nullable=False, default=500)
    top_up_credits = Column(Integer, nullable=False, default=2000)
    payment_method_id = Column(String, nullable=True)  # Stripe payment method
    max_monthly_top_ups = Column(Integer, nullable=False, default=5)

    # Monthly counters
    top_ups_this_month = Column(Integer, nullable=False, default=0)
    monthly_reset_at = Column(DateTime, nullable=True)

    # Failure tracking
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_failure_at = Column(DateTime, nullable=True)
    last_top_up_error = Column(String, nullable=True)
    needs_manual_review = Column(Boolean, nullable=False, default=False)

    last_top_up_at = Column(DateTime, nullable=True)
    last_top_up_amount = Column(Integer, nullable=True)

    # Relationships
    account = relationship("Account", back_populates="auto_top_up_config")

    def __repr__(self) -> str:
        """String representation."""
        return f"<AutoTopUpConfig(account_id={self.account_id}, enabled={self.enabled}, threshold={self.threshold_credits})>"
