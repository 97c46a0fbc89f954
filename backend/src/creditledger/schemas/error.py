"""Structured error response schemas."""
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorDetail(BaseModel):
    """Detailed error information."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    field: str | None = Field(default=None, description="Field that caused the error (for validation errors)")
    value: Any | None = Field(default=None, description="Invalid value (for validation errors)")


class ErrorResponse(BaseModel):
    """Standard error response structure.

    Every error carries a machine-readable code, a remediation hint and the
    request ID so a failed call can be traced through the logs.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "PaymentRequired",
                "message": "Deducting 9.6 would leave less than the minimum balance of 0.5",
                "details": [
                    {
                        "code": "minimum_balance_violation",
                        "message": "max_affordable=9.5",
                        "field": "amount",
                        "value": "9.6",
                    }
                ],
                "remediation": "Retry with an amount no larger than max_affordable",
                "max_affordable": "9.5",
                "request_id": "req_1234567890",
                "timestamp": "2024-01-15T10:30:00Z",
            }
        }
    )

    error: str = Field(..., description="Error type (e.g., 'ValidationError', 'NotFound', 'PaymentRequired')")
    message: str = Field(..., description="Primary error message")
    details: list[ErrorDetail] | None = Field(default=None, description="Detailed error information")
    remediation: str | None = Field(default=None, description="Suggestion for fixing the error")
    max_affordable: str | None = Field(default=None, description="Largest deductible amount (minimum balance errors)")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Error timestamp")


# Error codes enum for consistency
class ErrorCode:
    """Standard error codes used across the API."""

    # Validation errors (400/422)
    INVALID_AMOUNT = "invalid_amount"
    INVALID_UUID = "invalid_uuid"
    MISSING_REQUIRED_FIELD = "missing_required_field"
    INVALID_ENUM_VALUE = "invalid_enum_value"

    # Business logic errors (400/402)
    INSUFFICIENT_CREDITS = "insufficient_credits"
    MINIMUM_BALANCE_VIOLATION = "minimum_balance_violation"
    INVALID_STATE_TRANSITION = "invalid_state_transition"

    # Not found errors (404)
    ACCOUNT_NOT_FOUND = "account_not_found"
    AUTO_TOP_UP_NOT_FOUND = "auto_top_up_not_found"

    # External service errors (502, 503)
    PROVIDER_ERROR = "provider_error"
    DATABASE_ERROR = "database_error"

    # Internal errors (500)
    INTERNAL_ERROR = "internal_error"


# Remediation hints for common errors
REMEDIATION_HINTS = {
    ErrorCode.INVALID_AMOUNT: "Provide a non-negative credit amount (e.g., 12.5)",
    ErrorCode.INVALID_UUID: "Provide a valid UUID v4 identifier",
    ErrorCode.INSUFFICIENT_CREDITS: "Purchase credits or enable auto top-up, then retry",
    ErrorCode.MINIMUM_BALANCE_VIOLATION: "Retry with an amount no larger than max_affordable",
    ErrorCode.INVALID_STATE_TRANSITION: "Check the usage period status before changing it",
    ErrorCode.ACCOUNT_NOT_FOUND: "Verify the account ID is correct and the account exists",
    ErrorCode.AUTO_TOP_UP_NOT_FOUND: "Configure auto top-up for this account first",
    ErrorCode.PROVIDER_ERROR: "The billing provider is temporarily unavailable. Please try again later.",
    ErrorCode.DATABASE_ERROR: "Database temporarily unavailable. Please try again in a few moments.",
}
