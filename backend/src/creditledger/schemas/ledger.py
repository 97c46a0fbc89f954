"""Pydantic schemas for the credit ledger."""
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from creditledger.exceptions import LedgerError
from creditledger.models.credit_transaction import CreditTransactionType


# Transaction metadata: one payload shape per kind of balance movement


class DeductionMetadata(BaseModel):
    """Split of a deduction across buckets, and what is left in each."""

    kind: Literal["deduction"] = "deduction"
    carry_over_deducted: Decimal
    base_plan_deducted: Decimal
    purchased_deducted: Decimal
    carry_over_remaining: Decimal
    base_plan_remaining: Decimal
    purchased_remaining: Decimal
    context: dict[str, Any] = Field(default_factory=dict, description="Caller-supplied details (model, sandbox, ...)")


class AllocationMetadata(BaseModel):
    """Monthly plan allocation."""

    kind: Literal["allocation"] = "allocation"
    tier: str
    period: str = Field(..., description="Allocation month as YYYY-MM")


class ExpirationMetadata(BaseModel):
    """Carry-over credits forfeited at expiry."""

    kind: Literal["expiration"] = "expiration"
    expired_credits: Decimal
    expired_at: datetime


class GrantMetadata(BaseModel):
    """Applied credit grant (purchase or promotion)."""

    kind: Literal["grant"] = "grant"
    grant_id: UUID
    category: str
    bucket: str = "purchased"


class TopUpMetadata(BaseModel):
    """Automatic top-up charge."""

    kind: Literal["top_up"] = "top_up"
    config_id: UUID
    grant_id: UUID | None = None
    payment_id: str | None = None
    top_up_number: int


class AdjustmentMetadata(BaseModel):
    """Manual or API-driven adjustment."""

    kind: Literal["adjustment"] = "adjustment"
    bucket: str = "base_plan"
    context: dict[str, Any] = Field(default_factory=dict)


TransactionMetadata = Annotated[
    Union[
        DeductionMetadata,
        AllocationMetadata,
        ExpirationMetadata,
        GrantMetadata,
        TopUpMetadata,
        AdjustmentMetadata,
    ],
    Field(discriminator="kind"),
]

transaction_metadata_adapter: TypeAdapter[TransactionMetadata] = TypeAdapter(TransactionMetadata)


def dump_metadata(metadata: BaseModel | dict[str, Any] | None, bucket: str = "base_plan") -> dict[str, Any]:
    """
    Validate transaction metadata and return its JSON form.

    A plain dict without a `kind` becomes the context of an adjustment.
    """
    if metadata is None:
        model = AdjustmentMetadata(bucket=bucket)
    elif isinstance(metadata, BaseModel):
        model = transaction_metadata_adapter.validate_python(metadata.model_dump())
    elif "kind" in metadata:
        model = transaction_metadata_adapter.validate_python(metadata)
    else:
        model = AdjustmentMetadata(bucket=bucket, context=metadata)
    return model.model_dump(mode="json")


# Results


class DeductionResult(BaseModel):
    """
    Outcome of a deduction.

    Callers check `ok` or call `unwrap()`; insufficient funds are a value,
    not an exception.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    ok: bool
    error: LedgerError | None = None
    transaction_id: UUID | None = None
    balance_before: Decimal | None = None
    balance_after: Decimal | None = None
    carry_over_deducted: Decimal = Decimal("0")
    base_plan_deducted: Decimal = Decimal("0")
    purchased_deducted: Decimal = Decimal("0")
    expired_carry_over: Decimal = Decimal("0")

    @classmethod
    def failure(cls, error: LedgerError, balance: Decimal | None = None, expired: Decimal = Decimal("0")) -> "DeductionResult":
        return cls(ok=False, error=error, balance_before=balance, balance_after=balance, expired_carry_over=expired)

    def unwrap(self) -> "DeductionResult":
        """Return self on success, raise the ledger error otherwise."""
        if self.error is not None:
            raise self.error
        return self


class AffordabilityCheck(BaseModel):
    """Read-only affordability answer."""

    can_afford: bool
    reason: str | None = None
    current_balance: Decimal
    max_affordable: Decimal | None = Field(
        default=None, description="Largest amount still deductible when blocked by the minimum balance"
    )
    minimum_balance: Decimal


class AccountBalance(BaseModel):
    """Schema for account balance and its bucket decomposition."""

    account_id: UUID
    balance: Decimal
    base_plan_credits: Decimal
    carry_over_credits: Decimal
    carry_over_expires_at: datetime | None
    purchased_credits: Decimal
    membership_tier: str
    last_credit_reset: datetime | None
    monthly_credits_used: Decimal
    lifetime_credits_used: Decimal
    allocated: Decimal = Field(default=Decimal("0"), description="Monthly allocation granted by this read")
    expired: Decimal = Field(default=Decimal("0"), description="Carry-over cleared by this read")


# API schemas


class DeductRequest(BaseModel):
    """Schema for deducting credits."""

    amount: Decimal = Field(..., ge=0, description="Credits to deduct")
    type: CreditTransactionType = Field(default=CreditTransactionType.USAGE)
    description: str = Field(..., min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeductResponse(BaseModel):
    """Schema for a successful deduction."""

    transaction_id: UUID | None
    balance_before: Decimal | None
    balance_after: Decimal | None
    carry_over_deducted: Decimal
    base_plan_deducted: Decimal
    purchased_deducted: Decimal


class AddRequest(BaseModel):
    """Schema for adding credits."""

    amount: Decimal = Field(..., ge=0, description="Credits to add")
    type: CreditTransactionType = Field(default=CreditTransactionType.ADJUSTMENT)
    description: str = Field(..., min_length=1)
    bucket: Literal["base_plan", "purchased"] = Field(default="base_plan")
    metadata: dict[str, Any] = Field(default_factory=dict)


class CreditTransaction(BaseModel):
    """Schema for returning a transaction."""

    id: UUID
    account_id: UUID
    amount: Decimal
    type: CreditTransactionType
    description: str
    balance_after: Decimal
    metadata: dict[str, Any] = Field(validation_alias="details")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CreditTransactionList(BaseModel):
    """Schema for paginated transaction list."""

    items: list[CreditTransaction]
    total: int
    page: int
    page_size: int
