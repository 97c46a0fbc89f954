"""
Ledger and provider exceptions.

Ledger errors reach the caller synchronously. Provider errors are raised by
adapters and handled inside the meter event worker; they never reach the
code that enqueued the event.
"""
from decimal import Decimal
from typing import Any


class LedgerError(Exception):
    """Base exception for credit ledger errors."""

    code = "ledger_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(LedgerError):
    """Invalid input such as a negative amount. A programming error, not a funding problem."""

    code = "invalid_amount"


class AccountNotFoundError(LedgerError):
    """Account does not exist."""

    code = "account_not_found"

    def __init__(self, account_id: Any):
        super().__init__(f"Account {account_id} not found", {"account_id": str(account_id)})
        self.account_id = account_id


class InsufficientCreditsError(LedgerError):
    """
    Balance is lower than the requested amount.

    Attributes:
        required: Credits requested
        available: Balance at the time of the check
    """

    code = "insufficient_credits"

    def __init__(self, required: Decimal, available: Decimal):
        super().__init__(
            f"Insufficient credits: required {required}, available {available}",
            {
                "required": str(required),
                "available": str(available),
                "shortfall": str(max(Decimal("0"), required - available)),
            },
        )
        self.required = required
        self.available = available


class MinimumBalanceViolationError(LedgerError):
    """
    Deduction would leave the balance below the protected floor.

    `max_affordable` is the largest amount that can still be deducted, so the
    caller can fall back to a cheaper operation.
    """

    code = "minimum_balance_violation"

    def __init__(self, required: Decimal, available: Decimal, minimum_balance: Decimal):
        self.max_affordable = max(Decimal("0"), available - minimum_balance)
        super().__init__(
            f"Deducting {required} would leave less than the minimum balance of {minimum_balance}",
            {
                "required": str(required),
                "available": str(available),
                "minimum_balance": str(minimum_balance),
                "max_affordable": str(self.max_affordable),
            },
        )
        self.required = required
        self.available = available
        self.minimum_balance = minimum_balance


class InvalidStateTransitionError(LedgerError):
    """Usage period cannot move to the requested status."""

    code = "invalid_state_transition"


class ProviderError(Exception):
    """Base exception for metering/payment provider failures."""

    retryable = False

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        self.code = code
        super().__init__(message)


class ProviderRateLimitedError(ProviderError):
    """Provider rejected the request because of its rate limit."""

    retryable = True


class ProviderTransientError(ProviderError):
    """Network or server-side failure that may succeed on retry."""

    retryable = True


class ProviderIdempotencyConflict(ProviderError):
    """Provider already accepted a request with this idempotency key."""


class ProviderPermanentError(ProviderError):
    """Request was rejected and will not succeed on retry (bad customer, bad payload)."""
