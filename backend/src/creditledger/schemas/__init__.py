"""Pydantic schemas for API request/response validation."""

from creditledger.schemas.auto_top_up import (
    AutoTopUpConfig,
    AutoTopUpConfigUpdate,
    AutoTopUpRunResult,
    TopUpResult,
)
from creditledger.schemas.error import (
    REMEDIATION_HINTS,
    ErrorCode,
    ErrorDetail,
    ErrorResponse,
)
from creditledger.schemas.ledger import (
    AccountBalance,
    AddRequest,
    AffordabilityCheck,
    CreditTransaction,
    CreditTransactionList,
    DeductionResult,
    DeductRequest,
    DeductResponse,
    TransactionMetadata,
)
from creditledger.schemas.meter_event import (
    MeterEventCreate,
    MeterEventEnqueued,
    MeterEventJob,
    QueueHealth,
    QueueStats,
)
from creditledger.schemas.usage import (
    CreditBreakdown,
    CreditsSyncResult,
    ReconciliationReport,
    ReportResult,
    ResourceCost,
    UsageBreakdownResponse,
    UsageMetrics,
    UsagePeriod,
)

__all__ = [
    # Auto top-up
    "AutoTopUpConfig",
    "AutoTopUpConfigUpdate",
    "AutoTopUpRunResult",
    "TopUpResult",
    # Error
    "REMEDIATION_HINTS",
    "ErrorCode",
    "ErrorDetail",
    "ErrorResponse",
    # Ledger
    "AccountBalance",
    "AddRequest",
    "AffordabilityCheck",
    "CreditTransaction",
    "CreditTransactionList",
    "DeductionResult",
    "DeductRequest",
    "DeductResponse",
    "TransactionMetadata",
    # Meter events
    "MeterEventCreate",
    "MeterEventEnqueued",
    "MeterEventJob",
    "QueueHealth",
    "QueueStats",
    # Usage
    "CreditBreakdown",
    "CreditsSyncResult",
    "ReconciliationReport",
    "ReportResult",
    "ResourceCost",
    "UsageBreakdownResponse",
    "UsageMetrics",
    "UsagePeriod",
]
