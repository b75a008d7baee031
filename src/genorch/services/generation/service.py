"""Image generation request orchestration.

``submit`` gates a request (switch, quota, resources, access, safety), charges
for it, submits it to the orchestrator and refunds if the submission fails.
``format_request`` turns a remote job back into the user-facing request.
Listing and deletion start from the local job pointers written at submission.
"""

from datetime import timedelta
from typing import Any, Optional

import structlog

from genorch.core.config import Settings
from genorch.core.timezone import utcnow
from genorch.models.generation_job import GenerationJob
from genorch.models.model import ModelType
from genorch.schemas.generation import (
    CreateGenerationRequestInput,
    GeneratedImage,
    GenerationRequest,
    GenerationRequestPage,
    GenerationRequestParams,
    GenerationRequestStatus,
    GenerationStatus,
    RequestResource,
    Resource,
    SessionUser,
)
from genorch.schemas.orchestrator import (
    AdditionalNetwork,
    JobsResponse,
    JobSnapshot,
    PrepareModelPayload,
    TextToImageParams,
    TextToImagePayload,
)
from genorch.services.exceptions import (
    AccessDeniedError,
    GenerationDisabledError,
    InvalidInputError,
    InvalidResourceSetError,
    ModerationRejectedError,
    NotFoundError,
    RateLimitedError,
    RemoteRateLimitedError,
    RemoteSubmissionFailedError,
)
from genorch.services.features import FeatureFlags
from genorch.services.generation.constants import (
    BASE_MODEL_TO_ORCHESTRATION,
    MAX_RESOURCES,
    MIN_RESOURCES,
    SAMPLER_TO_SCHEDULER,
    calculate_generation_cost,
    get_base_model_set,
    get_generation_config,
    is_sdxl_family,
    parse_resource_ref,
    resource_ref,
)
from genorch.services.generation.limiter import QuotaLimiter
from genorch.services.generation.resources import ResourceResolver
from genorch.services.generation.safety import SafetyPipeline, strip_injected
from genorch.services.ledger.client import LedgerClient, TransactionType
from genorch.services.orchestrator.client import OrchestratorClient
from genorch.uow import UnitOfWorkFactory

logger = structlog.get_logger(__name__)

# Remote job status label -> request status
REMOTE_STATUS_MAP = {
    "Pending": GenerationRequestStatus.PENDING,
    "Scheduled": GenerationRequestStatus.PENDING,
    "Claimed": GenerationRequestStatus.PROCESSING,
    "Processing": GenerationRequestStatus.PROCESSING,
    "Updated": GenerationRequestStatus.PROCESSING,
    "Succeeded": GenerationRequestStatus.SUCCEEDED,
    "Cancelled": GenerationRequestStatus.CANCELLED,
    "Canceled": GenerationRequestStatus.CANCELLED,
    "Deleted": GenerationRequestStatus.CANCELLED,
    "Error": GenerationRequestStatus.ERROR,
    "Failed": GenerationRequestStatus.ERROR,
    "Expired": GenerationRequestStatus.ERROR,
    "Rejected": GenerationRequestStatus.ERROR,
}

PREPARE_MODEL_PROVIDERS = ["OctoML", "OctoMLNext"]

# Users may retry this long after hitting their limit
LIMIT_RETRY_DELAY = timedelta(minutes=60)

# Upper bound on the requests removed by one delete-all call
MAX_DELETE_ALL = 1000


def map_request_status(label: Optional[str]) -> GenerationRequestStatus:
    if label is None:
        return GenerationRequestStatus.PENDING
    status = REMOTE_STATUS_MAP.get(label)
    if status is None:
        logger.warning("generation.status.unknown", label=label)
        return GenerationRequestStatus.PENDING
    return status


class GenerationService:
    """Submit image generation jobs and read them back."""

    def __init__(
        self,
        orchestrator: OrchestratorClient,
        ledger: LedgerClient,
        resolver: ResourceResolver,
        safety: SafetyPipeline,
        limiter: QuotaLimiter,
        features: FeatureFlags,
        uow_factory: UnitOfWorkFactory,
        settings: Settings,
    ):
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.resolver = resolver
        self.safety = safety
        self.limiter = limiter
        self.features = features
        self.uow_factory = uow_factory
        self.settings = settings

    async def submit(
        self, user: SessionUser, request: CreateGenerationRequestInput
    ) -> GenerationRequest:
        """Validate, charge and submit a text-to-image request.

        Every policy check runs before the debit. Once debited, any failure to
        submit refunds the transaction before the error is raised.

        Raises:
            GenerationDisabledError: Generation switched off (moderators bypass)
            RateLimitedError: Quota for the window reached
            InvalidResourceSetError: Bad resource count, unknown/uncovered resource,
                not exactly one checkpoint
            InvalidInputError: Bad aspect ratio or base model
            AccessDeniedError: Private resource without a grant
            ModerationRejectedError: Prompt flagged by moderation
            InsufficientFundsError: Debit rejected by the ledger
            RemoteRateLimitedError: Orchestrator answered 429 (refunded)
            RemoteSubmissionFailedError: Any other submission failure (refunded)
        """
        params = request.params
        user_key = str(user.id)
        log = logger.bind(user_id=user.id)

        # 1. Global switch
        status = await self.features.get_generation_status()
        if not status.available and not user.is_moderator:
            raise GenerationDisabledError(status.message or "Generation is currently disabled")

        # 2. Quota
        if await self.limiter.has_exceeded_limit(user_key, user.tier):
            hit_time = await self.limiter.get_limit_hit_time(user_key)
            retry_at = hit_time + LIMIT_RETRY_DELAY if hit_time else None
            message = "You have exceeded the generation limit."
            if retry_at is None:
                message += " Please try again later."
            else:
                message += f" Please try again after {retry_at.isoformat(timespec='minutes')} UTC."
            raise RateLimitedError(message, retry_at=retry_at)

        # 3. Resources
        inputs = request.resources
        if len(inputs) < MIN_RESOURCES:
            raise InvalidResourceSetError("No resources provided")
        if len(inputs) > MAX_RESOURCES:
            raise InvalidResourceSetError("Too many resources provided")

        resources = await self.resolver.resolve(r.id for r in inputs)
        unavailable = set(await self.features.get_unavailable_resources())
        resolved_ids = {r.id for r in resources}
        if any(r.id not in resolved_ids for r in inputs) or any(
            not r.covered or r.id in unavailable for r in resources
        ):
            raise InvalidResourceSetError("Some of your resources are not available for generation")

        if not await self.resolver.check_access(resources, user.id):
            raise AccessDeniedError("You do not have access to some of the selected resources")

        # 4. Exactly one checkpoint
        checkpoints = [r for r in resources if r.model_type == ModelType.CHECKPOINT]
        if len(checkpoints) != 1:
            raise InvalidResourceSetError(
                "A checkpoint is required to make a generation request"
                if not checkpoints
                else "Only one checkpoint can be used per generation request"
            )
        checkpoint = checkpoints[0]

        base_model_set = get_base_model_set(params.base_model)
        if base_model_set is None:
            raise InvalidInputError(f"Unsupported base model: {params.base_model}")
        config = get_generation_config(base_model_set)

        if "x" in params.aspect_ratio:
            raise InvalidInputError("Invalid size. Please select your size and try again")
        try:
            aspect_ratio = config.aspect_ratios[int(params.aspect_ratio)]
        except (ValueError, IndexError):
            raise InvalidInputError("Invalid size. Please select your size and try again")

        # 5. Safety
        safety = await self.safety.evaluate(
            prompt=params.prompt,
            negative_prompt=params.negative_prompt,
            resources=resources,
            base_model=base_model_set,
            nsfw=params.nsfw,
        )
        if safety.flagged:
            log.info("generation.moderation.rejected", categories=safety.moderation.categories)
            raise ModerationRejectedError(safety.moderation.categories)

        additional_networks = self._build_networks(request, resources, base_model_set)
        additional_networks.update(safety.injected_networks)

        # 6. Cost and debit
        cost = calculate_generation_cost(
            base_model_set,
            quantity=params.quantity,
            steps=params.steps,
            width=aspect_ratio.width,
            height=aspect_ratio.height,
            multiplier=self.settings.generation_cost_multiplier,
        )

        # 7. Payload
        payload = TextToImagePayload(
            model=resource_ref(checkpoint.id),
            base_model=BASE_MODEL_TO_ORCHESTRATION.get(base_model_set),
            quantity=params.quantity,
            nsfw=safety.nsfw,
            additional_networks=additional_networks,
            params=TextToImageParams(
                prompt=safety.positive_prompt,
                negative_prompt=safety.negative_prompt,
                scheduler=SAMPLER_TO_SCHEDULER[params.sampler],
                steps=params.steps,
                cfg_scale=params.cfg_scale,
                width=aspect_ratio.width,
                height=aspect_ratio.height,
                seed=params.seed,
                clip_skip=params.clip_skip,
            ),
            properties={"userId": user.id},
        )

        transaction_id: Optional[str] = None
        if cost > 0:
            transaction_id = await self.ledger.debit(
                from_account_id=user.id,
                amount=cost,
                type=TransactionType.GENERATION,
                details={
                    "resources": [r.id for r in resources],
                    "params": params.model_dump(mode="json", by_alias=True),
                },
                description="Image generation",
            )
            payload.properties["transactionId"] = transaction_id

        # 8. Submit, refunding on any failure
        try:
            response = await self.orchestrator.text_to_image(payload)
            job = response.first
            if job is None:
                raise RemoteSubmissionFailedError("Orchestrator returned no job")
        except Exception as e:
            log.warning(
                "generation.submit.failed",
                error=str(e),
                exc_type=type(e).__name__,
                transaction_id=transaction_id,
            )
            if transaction_id:
                await self.ledger.refund_with_retries(
                    transaction_id, "Refund due to an error submitting the generation job."
                )
            if isinstance(e, (RemoteRateLimitedError, RemoteSubmissionFailedError)):
                raise
            raise RemoteSubmissionFailedError(
                "An error occurred while submitting your request. Please try again later."
            ) from e

        # 9. Bookkeeping and response
        await self.limiter.increment(user_key, params.quantity)
        await self._record_job(job.job_id, user, params.quantity, cost, transaction_id)

        log.info(
            "generation.submitted",
            job_id=job.job_id,
            cost=cost,
            transaction_id=transaction_id,
            quantity=params.quantity,
        )

        snapshot = JobSnapshot(
            job_id=job.job_id,
            status=job.status or "Pending",
            created_at=utcnow(),
            estimated_completed_at=job.estimated_completed_at,
            queue_position=job.queue_position,
            payload=payload.to_wire(),
            result=job.result,
        )
        return await self.format_request(snapshot, resources=resources)

    def _build_networks(
        self,
        request: CreateGenerationRequestInput,
        resources: list[Resource],
        base_model_set: str,
    ) -> dict[str, AdditionalNetwork]:
        """User resources allowed as additional networks for the family, plus a VAE."""
        allowed = get_generation_config(base_model_set).additional_resource_types
        by_id = {r.id: r for r in resources}
        networks: dict[str, AdditionalNetwork] = {}

        for item in request.resources:
            resource = by_id[item.id]
            if resource.model_type in allowed:
                networks[resource_ref(resource.id)] = AdditionalNetwork(
                    type=resource.model_type.value,
                    strength=item.strength,
                    trigger_word=item.trigger_word,
                )
            elif resource.model_type == ModelType.VAE and not is_sdxl_family(base_model_set):
                networks[resource_ref(resource.id)] = AdditionalNetwork(type=ModelType.VAE.value)

        return networks

    async def _record_job(
        self,
        job_id: str,
        user: SessionUser,
        quantity: int,
        cost: int,
        transaction_id: Optional[str],
    ) -> None:
        # The job is already paid for and running; a missing pointer only
        # under-counts the next quota seed
        try:
            async with await self.uow_factory() as uow:
                await uow.generation_jobs.add(
                    GenerationJob(
                        job_id=job_id,
                        user_id=user.id,
                        quantity=quantity,
                        cost=cost,
                        transaction_id=transaction_id,
                    )
                )
        except Exception as e:
            logger.error(
                "generation.pointer.record_failed",
                job_id=job_id,
                user_id=user.id,
                error=str(e),
                important=True,
            )

    async def get_request(
        self, job_id: str, user: Optional[SessionUser] = None
    ) -> GenerationRequest:
        """Fetch a job from the orchestrator and format it for display.

        Raises:
            NotFoundError: Unknown job
            AccessDeniedError: Job belongs to another user (moderators may read all)
        """
        snapshot = await self.orchestrator.get_job(job_id)
        if user is not None:
            _check_owner(snapshot, user)
        return await self.format_request(snapshot)

    async def list_requests(
        self, user: SessionUser, cursor: Optional[str] = None, limit: int = 20
    ) -> GenerationRequestPage:
        """A page of the user's requests, newest first.

        ``cursor`` is the ``next_cursor`` of the previous page. Jobs the
        orchestrator no longer knows are left out of the page.

        Raises:
            InvalidInputError: Cursor does not name one of the user's requests
        """
        async with await self.uow_factory() as uow:
            before = await uow.generation_jobs.get_by_job_id(cursor) if cursor else None
            if cursor and (before is None or before.user_id != user.id):
                raise InvalidInputError("Invalid cursor")
            pointers = await uow.generation_jobs.list_for_user(user.id, limit + 1, before=before)
            job_ids = [pointer.job_id for pointer in pointers]

        page = job_ids[:limit]
        items: list[GenerationRequest] = []
        for job_id in page:
            try:
                snapshot = await self.orchestrator.get_job(job_id)
            except NotFoundError:
                logger.info("generation.request.expired", job_id=job_id, user_id=user.id)
                continue
            items.append(await self.format_request(snapshot))

        return GenerationRequestPage(
            items=items, next_cursor=page[-1] if len(job_ids) > limit else None
        )

    async def delete_request(self, job_id: str, user: SessionUser) -> None:
        """Delete one of the user's requests and its outputs.

        Raises:
            NotFoundError: Unknown job
            AccessDeniedError: Job belongs to another user
        """
        snapshot = await self.orchestrator.get_job(job_id)
        _check_owner(snapshot, user)
        await self.orchestrator.delete_job(job_id)
        async with await self.uow_factory() as uow:
            await uow.generation_jobs.delete_by_job_ids([job_id])
        logger.info("generation.request.deleted", job_id=job_id, user_id=user.id)

    async def delete_all_requests(self, user: SessionUser) -> int:
        """Delete every request the user has on record. Returns how many were removed."""
        async with await self.uow_factory() as uow:
            pointers = await uow.generation_jobs.list_for_user(user.id, limit=MAX_DELETE_ALL)
            job_ids = [pointer.job_id for pointer in pointers]

        deleted: list[str] = []
        try:
            for job_id in job_ids:
                try:
                    await self.orchestrator.delete_job(job_id)
                except NotFoundError:
                    logger.debug("generation.request.already_gone", job_id=job_id)
                deleted.append(job_id)
        finally:
            async with await self.uow_factory() as uow:
                await uow.generation_jobs.delete_by_job_ids(deleted)
            logger.info("generation.requests.deleted", user_id=user.id, count=len(deleted))
        return len(deleted)

    async def delete_images(self, job_id: str, blob_keys: list[str], user: SessionUser) -> None:
        """Delete generated images of one of the user's requests.

        Raises:
            NotFoundError: Unknown job, or an image that is not part of it
            AccessDeniedError: Job belongs to another user
        """
        snapshot = await self.orchestrator.get_job(job_id)
        _check_owner(snapshot, user)
        owned = {image.blob_key for image in _parse_images(snapshot.result)}
        missing = [key for key in blob_keys if key not in owned]
        if missing:
            raise NotFoundError(f"Images not found: {', '.join(missing)}")
        for blob_key in blob_keys:
            await self.orchestrator.delete_blob(blob_key)
        logger.info("generation.images.deleted", job_id=job_id, count=len(blob_keys))

    async def format_request(
        self, snapshot: JobSnapshot, resources: Optional[list[Resource]] = None
    ) -> GenerationRequest:
        """Reverse-map a remote text-to-image job into a GenerationRequest.

        Injected safety-net words and references are removed, resource names
        are resolved and the remote status label is mapped.
        """
        payload = snapshot.payload or {}
        networks: dict[str, Any] = payload.get("additionalNetworks") or {}
        params: dict[str, Any] = payload.get("params") or {}

        assets = [payload["model"]] if payload.get("model") else []
        assets.extend(networks)
        prompt, negative_prompt, assets = strip_injected(
            params.get("prompt") or "", params.get("negativePrompt") or "", assets
        )

        ids = [i for i in (parse_resource_ref(a) for a in assets) if i is not None]
        if resources is None:
            resources = await self.resolver.resolve(ids)
        by_id = {r.id: r for r in resources}

        request_resources: list[RequestResource] = []
        for asset in assets:
            model_version_id = parse_resource_ref(asset)
            resource = by_id.get(model_version_id) if model_version_id is not None else None
            if resource is None:
                continue
            network = networks.get(asset) or {}
            request_resources.append(
                RequestResource(
                    id=resource.id,
                    name=resource.name,
                    trained_words=resource.trained_words,
                    model_id=resource.model_id,
                    model_name=resource.model_name,
                    model_type=resource.model_type,
                    base_model=resource.base_model,
                    strength=network.get("strength"),
                    trigger_word=network.get("triggerWord"),
                )
            )

        checkpoint = next(
            (r for r in request_resources if r.model_type == ModelType.CHECKPOINT), None
        )
        seed = params.get("seed")

        return GenerationRequest(
            id=snapshot.job_id,
            user_id=(payload.get("properties") or {}).get("userId"),
            created_at=snapshot.created_at,
            estimated_completion_date=snapshot.estimated_completed_at,
            status=map_request_status(snapshot.status),
            queue_position=snapshot.queue_position,
            alternatives_available=await self.features.alternatives_available(),
            params=GenerationRequestParams(
                prompt=prompt,
                negative_prompt=negative_prompt,
                scheduler=params.get("scheduler"),
                steps=params.get("steps"),
                cfg_scale=params.get("cfgScale"),
                width=params.get("width"),
                height=params.get("height"),
                seed=None if seed == -1 else seed,
                clip_skip=params.get("clipSkip"),
                base_model=get_base_model_set(checkpoint.base_model) if checkpoint else None,
                quantity=payload.get("quantity") or 1,
            ),
            resources=request_resources,
            images=_parse_images(snapshot.result),
        )

    async def send_feedback(self, job_id: str, reason: str, message: Optional[str] = None) -> None:
        """Taint a job after negative user feedback.

        Raises:
            NotFoundError: Unknown job
        """
        await self.orchestrator.taint_job(
            job_id, reason, context={"imageHash": job_id, "message": message}
        )
        logger.info("generation.feedback.sent", job_id=job_id, reason=reason)

    async def check_resource_coverage(self, model_version_id: int) -> bool:
        return await self.resolver.is_covered(model_version_id)

    async def get_generation_status(self) -> GenerationStatus:
        return await self.features.get_generation_status()

    async def toggle_unavailable_resource(
        self, model_version_id: int, user: SessionUser
    ) -> list[int]:
        """Flip a resource in or out of the unavailable list (moderators only)."""
        if not user.is_moderator:
            raise AccessDeniedError("Only moderators can change resource availability")

        unavailable = await self.features.get_unavailable_resources()
        if model_version_id in unavailable:
            unavailable.remove(model_version_id)
        else:
            unavailable.append(model_version_id)
        await self.features.set_unavailable_resources(unavailable)

        logger.info(
            "generation.resource.availability_toggled",
            model_version_id=model_version_id,
            unavailable=model_version_id in unavailable,
            moderator_id=user.id,
        )
        return unavailable

    async def prepare_model(self, model_version_id: int, base_model: str) -> JobsResponse:
        """Ask the orchestrator to pre-load a model on its providers."""
        payload = PrepareModelPayload(
            base_model="SDXL" if "SDXL" in base_model else "SD_1_5",
            model=resource_ref(model_version_id),
            priority=1,
            providers=PREPARE_MODEL_PROVIDERS,
        )
        return await self.orchestrator.prepare_model(payload)


def _parse_images(result: Any) -> list[GeneratedImage]:
    if not isinstance(result, list):
        return []
    return [
        GeneratedImage.model_validate(item)
        for item in result
        if isinstance(item, dict) and item.get("blobKey")
    ]


def _check_owner(snapshot: JobSnapshot, user: SessionUser) -> None:
    """Moderators may act on any job; other users only on their own."""
    owner = ((snapshot.payload or {}).get("properties") or {}).get("userId")
    if not user.is_moderator and owner is not None and owner != user.id:
        raise AccessDeniedError("You do not have access to this generation request")
