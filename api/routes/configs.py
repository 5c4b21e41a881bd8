"""Rollout definition management endpoints."""

from typing import Union

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import JSONResponse

from api.config_resolver import resolve_rollout_definition
from api.config_storage import config_storage
from api.errors import RolloutConfigError
from api.models import (
    RolloutDefinitionInput,
    RolloutDefinitionListResponse,
    RolloutDefinitionResolved,
    ValidationErrorResponse,
)
from api.validation import ConfigValidationError, validate_rollout_definition

router = APIRouter(prefix="/api/v1/configs", tags=["configurations"])


def _resolve(
    request: RolloutDefinitionInput,
    existing: RolloutDefinitionResolved | None = None,
) -> RolloutDefinitionResolved:
    validate_rollout_definition(request)
    try:
        return resolve_rollout_definition(
            request,
            created_at=existing.created_at if existing else None,
        )
    except RolloutConfigError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e


@router.post(
    "",
    response_model=RolloutDefinitionResolved,
    status_code=status.HTTP_201_CREATED,
    summary="Create rollout definition",
    responses={
        201: {"description": "Rollout definition created successfully"},
        400: {"model": ValidationErrorResponse, "description": "Validation error"},
        409: {"description": "Rollout definition already exists"},
    },
)
async def create_config(
    request: RolloutDefinitionInput,
) -> Union[RolloutDefinitionResolved, JSONResponse]:
    """Validate, resolve and store a new rollout definition."""

    if config_storage.exists(request.rollout_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Rollout definition '{request.rollout_id}' already exists. "
            "Use PUT to update.",
        )

    try:
        resolved = _resolve(request)
    except ConfigValidationError as e:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=e.to_response().model_dump(),
        )

    resolved = config_storage.save(resolved)
    return resolved


@router.get(
    "",
    response_model=RolloutDefinitionListResponse,
    summary="List rollout definitions",
)
async def list_configs() -> RolloutDefinitionListResponse:
    listing = config_storage.list_all()
    return RolloutDefinitionListResponse(
        definitions=listing.definitions,
        total=len(listing.definitions),
        skipped=listing.skipped,
    )


@router.get(
    "/{rollout_id}",
    response_model=RolloutDefinitionResolved,
    summary="Get rollout definition",
)
async def get_config(rollout_id: str) -> RolloutDefinitionResolved:
    config = config_storage.get(rollout_id)
    if config is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Rollout definition '{rollout_id}' not found",
        )

    return config


@router.put(
    "/{rollout_id}",
    response_model=RolloutDefinitionResolved,
    summary="Update rollout definition",
    description="Replace a rollout definition. Runs already started keep the "
    "definition they were started with until they reach the promotion gate.",
    responses={
        200: {"description": "Rollout definition updated successfully"},
        400: {"model": ValidationErrorResponse, "description": "Validation error"},
        404: {"description": "Rollout definition not found"},
    },
)
async def update_config(
    rollout_id: str,
    request: RolloutDefinitionInput,
) -> Union[RolloutDefinitionResolved, JSONResponse]:
    existing = config_storage.get(rollout_id)
    if existing is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Rollout definition '{rollout_id}' not found",
        )

    if request.rollout_id != rollout_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Rollout ID in request body '{request.rollout_id}' does not match URL '{rollout_id}'",
        )

    try:
        resolved = _resolve(request, existing)
    except ConfigValidationError as e:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=e.to_response().model_dump(),
        )

    resolved = config_storage.save(resolved)
    return resolved


@router.delete(
    "/{rollout_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete rollout definition",
    description="Delete a rollout definition. This does not destroy any "
    "deployed environment.",
)
async def delete_config(rollout_id: str) -> None:
    if not config_storage.delete(rollout_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Rollout definition '{rollout_id}' not found",
        )


@router.post(
    "/validate",
    response_model=RolloutDefinitionResolved,
    summary="Validate rollout definition without saving",
    responses={
        200: {"description": "Rollout definition is valid"},
        400: {"model": ValidationErrorResponse, "description": "Validation error"},
    },
)
async def validate_config_endpoint(
    request: RolloutDefinitionInput,
) -> Union[RolloutDefinitionResolved, JSONResponse]:
    try:
        return _resolve(request)
    except ConfigValidationError as e:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=e.to_response().model_dump(),
        )
