"""Credit balance and ledger API endpoints."""
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from creditledger.api.deps import get_ledger
from creditledger.models.credit_transaction import CreditTransactionType
from creditledger.schemas.ledger import (
    AccountBalance,
    AddRequest,
    AffordabilityCheck,
    CreditTransaction,
    CreditTransactionList,
    DeductRequest,
    DeductResponse,
)
from creditledger.services.credit_ledger import CreditLedger

router = APIRouter(prefix="/accounts/{account_id}", tags=["Credits"])


@router.get("/balance", response_model=AccountBalance)
async def get_balance(account_id: UUID, ledger: CreditLedger = Depends(get_ledger)) -> AccountBalance:
    """
    Get the account balance and its buckets.

    Reading the balance applies any due monthly allocation and clears
    expired carry-over credits.
    """
    return await ledger.get_balance(account_id)


@router.post("/credits/deduct", response_model=DeductResponse)
async def deduct_credits(
    account_id: UUID,
    request: DeductRequest,
    ledger: CreditLedger = Depends(get_ledger),
) -> DeductResponse:
    """
    Deduct credits.

    Returns 402 when the balance is insufficient or the deduction would break
    the minimum balance; the latter reports `max_affordable`.
    """
    result = await ledger.deduct(account_id, request.amount, request.type, request.description, request.metadata)
    result.unwrap()

    return DeductResponse(
        transaction_id=result.transaction_id,
        balance_before=result.balance_before,
        balance_after=result.balance_after,
        carry_over_deducted=result.carry_over_deducted,
        base_plan_deducted=result.base_plan_deducted,
        purchased_deducted=result.purchased_deducted,
    )


@router.post("/credits/add", response_model=CreditTransaction, status_code=status.HTTP_201_CREATED)
async def add_credits(
    account_id: UUID,
    request: AddRequest,
    ledger: CreditLedger = Depends(get_ledger),
) -> CreditTransaction:
    """Add credits to the base plan (default) or purchased bucket."""
    transaction = await ledger.add(
        account_id,
        request.amount,
        request.type,
        request.description,
        request.metadata,
        bucket=request.bucket,
    )
    return CreditTransaction.model_validate(transaction)


@router.get("/credits/can-afford", response_model=AffordabilityCheck)
async def can_afford(
    account_id: UUID,
    amount: Decimal = Query(..., ge=0),
    ledger: CreditLedger = Depends(get_ledger),
) -> AffordabilityCheck:
    """Check whether a deduction would succeed, without changing anything."""
    return await ledger.can_afford(account_id, amount)


@router.get("/transactions", response_model=CreditTransactionList)
async def list_transactions(
    account_id: UUID,
    page: int = 1,
    page_size: int = 50,
    type: CreditTransactionType | None = None,
    ledger: CreditLedger = Depends(get_ledger),
) -> CreditTransactionList:
    """
    List ledger transactions, newest first.

    - **page**: Page number (1-indexed, default: 1)
    - **page_size**: Items per page (default: 50, max: 500)
    - **type**: Filter by transaction type (optional)
    """
    if page < 1:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Page must be >= 1")
    if page_size < 1 or page_size > 500:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Page size must be between 1 and 500")

    transactions, total = await ledger.list_transactions(account_id, page, page_size, type)
    return CreditTransactionList(
        items=[CreditTransaction.model_validate(transaction) for transaction in transactions],
        total=total,
        page=page,
        page_size=page_size,
    )
