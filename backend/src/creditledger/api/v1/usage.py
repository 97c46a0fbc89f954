"""Usage recording and reporting API endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, status

from creditledger.api.deps import get_usage_reporting
from creditledger.exceptions import InvalidStateTransitionError
from creditledger.schemas.usage import ReportResult, UsageBreakdownResponse, UsageMetrics, UsagePeriod
from creditledger.services.usage_reporting import UsageReportingService

router = APIRouter(prefix="/accounts/{account_id}/usage", tags=["Usage"])


@router.post("", response_model=UsagePeriod, status_code=status.HTTP_202_ACCEPTED)
async def record_usage(
    account_id: UUID,
    usage: UsageMetrics,
    service: UsageReportingService = Depends(get_usage_reporting),
) -> UsagePeriod:
    """
    Add raw usage to the current billing period.

    Storage values are peaks; all other counters accumulate. Returns 409 once
    the period has been reported.
    """
    period = await service.record_usage(account_id, usage)
    if period is None:
        raise InvalidStateTransitionError("Usage period already reported", {"account_id": str(account_id)})
    return UsagePeriod.model_validate(period)


@router.post("/report", response_model=ReportResult)
async def report_usage(
    account_id: UUID,
    service: UsageReportingService = Depends(get_usage_reporting),
) -> ReportResult:
    """
    Report the current period to the metering provider.

    Safe to call repeatedly: a reported period queues nothing.
    """
    return await service.report_usage(account_id)


@router.get("/breakdown", response_model=UsageBreakdownResponse)
async def usage_breakdown(
    account_id: UUID,
    service: UsageReportingService = Depends(get_usage_reporting),
) -> UsageBreakdownResponse:
    """Current period counters with the credit contribution of each resource."""
    return await service.get_breakdown(account_id)
