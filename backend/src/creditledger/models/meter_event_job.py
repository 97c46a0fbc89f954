"""Meter event job model for durable delivery to the metering provider."""
import enum

from sqlalchemy import BigInteger, Column, DateTime, Enum as SQLEnum, Integer, String

from creditledger.models.base import Base


class MeterEventJobStatus(enum.Enum):
    """Delivery status."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class MeterEventOutcome(enum.Enum):
    """How a completed job ended."""

    DELIVERED = "delivered"
    DUPLICATE = "duplicate"  # Provider had already accepted the idempotency key


class MeterEventJob(Base):
    """
    One usage measurement waiting to be submitted to the metering provider.

    A waiting job whose run_at lies in the future is delayed (retry backoff).
    """

    __tablename__ = "meter_event_jobs"

    event_name = Column(String, nullable=False, index=True)
    external_customer_id = Column(String, nullable=False, index=True)
    value = Column(BigInteger, nullable=False)
    event_timestamp = Column(DateTime, nullable=True)
    idempotency_key = Column(String, nullable=True, unique=True)
    status = Column(SQLEnum(MeterEventJobStatus), nullable=False, default=MeterEventJobStatus.WAITING, index=True)
    outcome = Column(SQLEnum(MeterEventOutcome), nullable=True)
    attempt = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    run_at = Column(DateTime, nullable=False, index=True)
    claimed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    last_error = Column(String, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<MeterEventJob(id={self.id}, event_name={self.event_name}, status={self.status.value}, attempt={self.attempt})>"
