"""Image generation API endpoints.

This module implements REST endpoints for:
- POST /api/generation/requests - Validate, charge and submit a text-to-image request
- GET /api/generation/requests - The caller's requests, newest first (cursor paging)
- DELETE /api/generation/requests - Delete all of the caller's requests
- GET /api/generation/requests/{job_id} - Read a request back in display form
- DELETE /api/generation/requests/{job_id} - Delete one request
- DELETE /api/generation/requests/{job_id}/images - Delete generated images of a request
- POST /api/generation/requests/{job_id}/feedback - Report a bad result
- GET /api/generation/status - Global generation switch
- GET /api/generation/resources/{id}/coverage - Whether a resource can be generated with
- POST /api/generation/resources/{id}/toggle-availability - Moderator kill switch per resource
- POST /api/generation/models/prepare - Pre-load a model on the orchestrator's providers
"""

import structlog
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from genorch.api.dependencies import CurrentUser, get_generation_service
from genorch.api.errors import to_http_exception
from genorch.schemas.generation import (
    CreateGenerationRequestInput,
    GenerationRequest,
    GenerationRequestPage,
    GenerationStatus,
    PrepareModelInput,
    SendFeedbackInput,
)
from genorch.services.exceptions import AccessDeniedError, ServiceError
from genorch.services.generation.service import GenerationService

logger = structlog.get_logger()
router = APIRouter(prefix="/api/generation", tags=["generation"])


# Response Models


class CoverageResponse(BaseModel):
    id: int
    covered: bool


class UnavailableResourcesResponse(BaseModel):
    unavailable_resources: list[int] = Field(
        ..., description="Model version ids currently blocked for generation"
    )


class PrepareModelResponse(BaseModel):
    job_ids: list[str]


class DeleteRequestsResponse(BaseModel):
    deleted: int


# API Endpoints


@router.post(
    "/requests",
    response_model=GenerationRequest,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED,
)
async def create_generation_request(
    request: CreateGenerationRequestInput,
    user: CurrentUser,
    service: GenerationService = Depends(get_generation_service),
) -> GenerationRequest:
    """Submit a generation request on behalf of the caller.

    Raises:
        HTTPException 400: Invalid input or prompt flagged by moderation
        HTTPException 402: Not enough funds for the request
        HTTPException 403: Private resource without access
        HTTPException 429: Quota reached (X-Retry-At header) or orchestrator busy
        HTTPException 502: Orchestrator rejected the job (the debit was refunded)
        HTTPException 503: Generation disabled
    """
    try:
        return await service.submit(user, request)
    except ServiceError as e:
        logger.info(
            "generation.request.rejected",
            user_id=user.id,
            error_type=type(e).__name__,
            error=str(e),
        )
        raise to_http_exception(e)


@router.get("/requests", response_model=GenerationRequestPage, response_model_by_alias=True)
async def list_generation_requests(
    user: CurrentUser,
    cursor: str | None = None,
    limit: int = Query(default=20, ge=1, le=100),
    service: GenerationService = Depends(get_generation_service),
) -> GenerationRequestPage:
    try:
        return await service.list_requests(user, cursor=cursor, limit=limit)
    except ServiceError as e:
        raise to_http_exception(e)


@router.delete("/requests", response_model=DeleteRequestsResponse)
async def delete_all_generation_requests(
    user: CurrentUser,
    service: GenerationService = Depends(get_generation_service),
) -> DeleteRequestsResponse:
    try:
        deleted = await service.delete_all_requests(user)
    except ServiceError as e:
        raise to_http_exception(e)
    return DeleteRequestsResponse(deleted=deleted)


@router.delete("/requests/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_generation_request(
    job_id: str,
    user: CurrentUser,
    service: GenerationService = Depends(get_generation_service),
) -> None:
    try:
        await service.delete_request(job_id, user)
    except ServiceError as e:
        raise to_http_exception(e)


@router.delete("/requests/{job_id}/images", status_code=status.HTTP_204_NO_CONTENT)
async def delete_generated_images(
    job_id: str,
    user: CurrentUser,
    blob_keys: list[str] = Query(..., alias="blobKey"),
    service: GenerationService = Depends(get_generation_service),
) -> None:
    """Delete images of a request (repeat ``blobKey`` for several)."""
    try:
        await service.delete_images(job_id, blob_keys, user)
    except ServiceError as e:
        raise to_http_exception(e)


@router.get("/requests/{job_id}", response_model=GenerationRequest, response_model_by_alias=True)
async def get_generation_request(
    job_id: str,
    user: CurrentUser,
    service: GenerationService = Depends(get_generation_service),
) -> GenerationRequest:
    try:
        return await service.get_request(job_id, user)
    except ServiceError as e:
        raise to_http_exception(e)


@router.post("/requests/{job_id}/feedback", status_code=status.HTTP_204_NO_CONTENT)
async def send_feedback(
    job_id: str,
    feedback: SendFeedbackInput,
    user: CurrentUser,
    service: GenerationService = Depends(get_generation_service),
) -> None:
    try:
        await service.get_request(job_id, user)
        await service.send_feedback(job_id, feedback.reason, feedback.message)
    except ServiceError as e:
        raise to_http_exception(e)


@router.get("/status", response_model=GenerationStatus)
async def get_generation_status(
    service: GenerationService = Depends(get_generation_service),
) -> GenerationStatus:
    return await service.get_generation_status()


@router.get("/resources/{model_version_id}/coverage", response_model=CoverageResponse)
async def check_resource_coverage(
    model_version_id: int,
    service: GenerationService = Depends(get_generation_service),
) -> CoverageResponse:
    covered = await service.check_resource_coverage(model_version_id)
    return CoverageResponse(id=model_version_id, covered=covered)


@router.post(
    "/resources/{model_version_id}/toggle-availability",
    response_model=UnavailableResourcesResponse,
)
async def toggle_resource_availability(
    model_version_id: int,
    user: CurrentUser,
    service: GenerationService = Depends(get_generation_service),
) -> UnavailableResourcesResponse:
    try:
        unavailable = await service.toggle_unavailable_resource(model_version_id, user)
    except ServiceError as e:
        raise to_http_exception(e)
    return UnavailableResourcesResponse(unavailable_resources=unavailable)


@router.post("/models/prepare", response_model=PrepareModelResponse)
async def prepare_model(
    request: PrepareModelInput,
    user: CurrentUser,
    service: GenerationService = Depends(get_generation_service),
) -> PrepareModelResponse:
    if not user.is_moderator:
        raise to_http_exception(AccessDeniedError("Only moderators can prepare models"))
    try:
        response = await service.prepare_model(request.id, request.base_model)
    except ServiceError as e:
        raise to_http_exception(e)
    return PrepareModelResponse(job_ids=[job.job_id for job in response.jobs])
