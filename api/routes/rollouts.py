"""Rollout run endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status

from api.errors import (
    InvalidStateTransition,
    ProvisioningError,
    RolloutConflictError,
    RolloutNotFoundError,
)
from api.models import DecommissionResponse, RolloutRun
from api.services.rollout import RolloutService, get_rollout_service

router = APIRouter(prefix="/api/v1/rollouts", tags=["rollouts"])


@router.post(
    "/{rollout_id}",
    response_model=RolloutRun,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a rollout run",
    description="Provision and validate every environment of the rollout's wave. "
    "A healthy wave ends with a promotion request waiting for approval.",
    responses={
        404: {"description": "Rollout definition not found"},
        409: {"description": "A run of this rollout is already active"},
    },
)
async def start_rollout(
    rollout_id: str,
    service: RolloutService = Depends(get_rollout_service),
) -> RolloutRun:
    try:
        return await service.start(rollout_id)
    except RolloutNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except RolloutConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get(
    "/{rollout_id}/runs",
    response_model=list[RolloutRun],
    summary="List runs of a rollout, newest first",
)
async def list_runs(
    rollout_id: str,
    service: RolloutService = Depends(get_rollout_service),
) -> list[RolloutRun]:
    return service.list_runs(rollout_id)


@router.get(
    "/runs/{run_id}",
    response_model=RolloutRun,
    summary="Get a rollout run",
)
async def get_run(
    run_id: str,
    service: RolloutService = Depends(get_rollout_service),
) -> RolloutRun:
    try:
        return service.get_run(run_id)
    except RolloutNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post(
    "/runs/{run_id}/cancel",
    response_model=RolloutRun,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Cancel a rollout run",
    description="Environments not yet validated are reported as cancelled. "
    "A pending promotion request is rejected as abandoned.",
    responses={
        404: {"description": "Run not found"},
        409: {"description": "Run already finished, or its cut-over is pending retry"},
    },
)
async def cancel_run(
    run_id: str,
    service: RolloutService = Depends(get_rollout_service),
) -> RolloutRun:
    try:
        return await service.cancel(run_id)
    except RolloutNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (RolloutConflictError, InvalidStateTransition) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post(
    "/runs/{run_id}/environments/{environment}/destroy",
    response_model=DecommissionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Decommission an environment of a run",
    description="Trigger a destroy of the environment's stack. The promotion target "
    "of a promoted run, or of one waiting for approval, cannot be destroyed.",
    responses={
        404: {"description": "Run or environment not found"},
        409: {"description": "Run still active, or the environment serves production"},
        502: {"description": "Destroy could not be triggered"},
    },
)
async def decommission_environment(
    run_id: str,
    environment: str,
    service: RolloutService = Depends(get_rollout_service),
) -> DecommissionResponse:
    try:
        deployment_id = await service.decommission(run_id, environment)
    except RolloutNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except RolloutConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ProvisioningError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return DecommissionResponse(
        run_id=run_id, environment=environment, deployment_id=deployment_id
    )
