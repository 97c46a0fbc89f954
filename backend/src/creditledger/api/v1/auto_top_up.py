"""Auto top-up configuration API endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from creditledger.api.deps import get_auto_top_up as get_auto_top_up_service
from creditledger.schemas.auto_top_up import AutoTopUpConfig, AutoTopUpConfigUpdate
from creditledger.services.auto_top_up import AutoTopUpService

router = APIRouter(prefix="/accounts/{account_id}/auto-top-up", tags=["Auto Top-Up"])


def _not_found(account_id: UUID) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Auto top-up is not configured for account {account_id}",
    )


@router.get("", response_model=AutoTopUpConfig)
async def get_auto_top_up(
    account_id: UUID,
    service: AutoTopUpService = Depends(get_auto_top_up_service),
) -> AutoTopUpConfig:
    config = await service.get_config(account_id)
    if config is None:
        raise _not_found(account_id)
    return AutoTopUpConfig.model_validate(config)


@router.put("", response_model=AutoTopUpConfig)
async def configure_auto_top_up(
    account_id: UUID,
    data: AutoTopUpConfigUpdate,
    service: AutoTopUpService = Depends(get_auto_top_up_service),
) -> AutoTopUpConfig:
    """
    Create or replace the configuration.

    - **threshold_credits**: Top up when the balance drops below this
    - **top_up_credits**: Credits bought per top-up (1 credit = 1 cent)
    - **max_monthly_top_ups**: Upper bound on automatic charges per month
    """
    config = await service.configure(account_id, data)
    return AutoTopUpConfig.model_validate(config)


@router.delete("", response_model=AutoTopUpConfig)
async def disable_auto_top_up(
    account_id: UUID,
    service: AutoTopUpService = Depends(get_auto_top_up_service),
) -> AutoTopUpConfig:
    config = await service.disable(account_id)
    if config is None:
        raise _not_found(account_id)
    return AutoTopUpConfig.model_validate(config)
