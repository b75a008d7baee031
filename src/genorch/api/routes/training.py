"""Model training API endpoints.

- POST /api/training/requests - Charge for and submit the training job of a model version
- POST /api/training/assets/move - Copy a training output to permanent storage
"""

import structlog
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from genorch.api.dependencies import CurrentUser, get_training_service
from genorch.api.errors import to_http_exception
from genorch.services.exceptions import ServiceError
from genorch.services.training.service import MovedAsset, TrainingService

logger = structlog.get_logger()
router = APIRouter(prefix="/api/training", tags=["training"])


class TrainingRequestInput(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, protected_namespaces=()
    )

    model_version_id: int = Field(..., description="Model version to train")


class TrainingRequestResponse(BaseModel):
    job_id: str


class MoveAssetInput(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, protected_namespaces=()
    )

    url: str = Field(..., description="Orchestrator asset URL")
    model_version_id: int
    destination_uri: str = Field(..., description="Pre-signed upload URL")


@router.post(
    "/requests", response_model=TrainingRequestResponse, status_code=status.HTTP_201_CREATED
)
async def create_training_request(
    request: TrainingRequestInput,
    user: CurrentUser,
    service: TrainingService = Depends(get_training_service),
) -> TrainingRequestResponse:
    """Submit training for a model version owned by the caller.

    Raises:
        HTTPException 400: Unknown model version, bad parameters or wrong state
        HTTPException 402: Not enough funds for the training price
        HTTPException 403: Caller does not own the model
        HTTPException 429: Orchestrator busy
        HTTPException 502: Orchestrator rejected the job (the debit was refunded)
    """
    try:
        response = await service.create_training_request(request.model_version_id, user.id)
    except ServiceError as e:
        logger.info(
            "training.request.rejected",
            user_id=user.id,
            model_version_id=request.model_version_id,
            error_type=type(e).__name__,
            error=str(e),
        )
        raise to_http_exception(e)

    assert response.first is not None
    return TrainingRequestResponse(job_id=response.first.job_id)


@router.post("/assets/move", response_model=MovedAsset)
async def move_asset(
    request: MoveAssetInput,
    user: CurrentUser,
    service: TrainingService = Depends(get_training_service),
) -> MovedAsset:
    try:
        return await service.move_asset(
            request.url, request.model_version_id, user.id, request.destination_uri
        )
    except ServiceError as e:
        raise to_http_exception(e)
