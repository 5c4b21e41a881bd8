"""Promotion gate endpoints: the manual approval step before the DNS cut-over."""

from fastapi import APIRouter, Depends, HTTPException, status

from api.errors import CutoverError, InvalidStateTransition, PromotionNotFoundError
from api.models import PromotionRequest, RejectRequest
from api.services.rollout import RolloutService, get_rollout_service

router = APIRouter(prefix="/api/v1/promotions", tags=["promotions"])


@router.get(
    "/{request_id}",
    response_model=PromotionRequest,
    summary="Get a promotion request",
)
async def get_promotion(
    request_id: str,
    service: RolloutService = Depends(get_rollout_service),
) -> PromotionRequest:
    try:
        return service.get_promotion(request_id)
    except PromotionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post(
    "/{request_id}/approve",
    response_model=PromotionRequest,
    summary="Approve a promotion and apply the cut-over",
    description="Approving an applied request is a no-op. If the cut-over fails "
    "the request stays approved and can be approved again to retry.",
    responses={
        404: {"description": "Promotion request not found"},
        409: {"description": "Promotion request was rejected"},
        502: {"description": "Cut-over failed"},
    },
)
async def approve_promotion(
    request_id: str,
    service: RolloutService = Depends(get_rollout_service),
) -> PromotionRequest:
    try:
        return await service.approve(request_id)
    except PromotionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidStateTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except CutoverError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.post(
    "/{request_id}/reject",
    response_model=PromotionRequest,
    summary="Reject a promotion",
    responses={
        404: {"description": "Promotion request not found"},
        409: {"description": "Promotion request was already approved"},
    },
)
async def reject_promotion(
    request_id: str,
    body: RejectRequest | None = None,
    service: RolloutService = Depends(get_rollout_service),
) -> PromotionRequest:
    reason = body.reason if body else None
    try:
        return await service.reject(request_id, reason=reason)
    except PromotionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidStateTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
