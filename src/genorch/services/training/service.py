"""Training job submission and asset management."""

import re
from datetime import datetime
from typing import Any, Optional

import structlog
from pydantic import BaseModel

from genorch.core.config import Settings
from genorch.core.timezone import utcnow
from genorch.models.model_version import TrainingStatus
from genorch.schemas.orchestrator import ImageResourceTrainingPayload, JobsResponse
from genorch.schemas.training import TrainingRun
from genorch.services.exceptions import (
    AccessDeniedError,
    InsufficientFundsError,
    InvalidInputError,
    NotFoundError,
    RemoteRateLimitedError,
    RemoteSubmissionFailedError,
)
from genorch.services.ledger.client import LedgerClient, TransactionType
from genorch.services.orchestrator.client import OrchestratorClient
from genorch.services.training.pricing import (
    TRAINING_BASE_MODELS,
    calc_eta,
    calc_price_from_eta,
    find_invalid_params,
)
from genorch.uow import UnitOfWorkFactory

logger = structlog.get_logger(__name__)

ASSET_URL_PATTERN = re.compile(
    r"/v\d/consumer/jobs/(?P<job_id>[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})"
    r"/assets/(?P<asset_name>\S+)$",
    re.IGNORECASE,
)

SUBMITTABLE_STATUSES = (
    TrainingStatus.PENDING,
    TrainingStatus.SUBMITTED,
    TrainingStatus.PROCESSING,
)


class MovedAsset(BaseModel):
    new_url: str
    file_size: Optional[int] = None


class TrainingService:
    """Submit training jobs (first submission and resubmission) and move their outputs."""

    def __init__(
        self,
        orchestrator: OrchestratorClient,
        ledger: LedgerClient,
        uow_factory: UnitOfWorkFactory,
        settings: Settings,
    ):
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.uow_factory = uow_factory
        self.settings = settings

    @property
    def callback_url(self) -> str:
        host = self.settings.generation_callback_host.rstrip("/")
        return f"{host}/api/webhooks/resource-training?token={self.settings.webhook_token}"

    async def create_training_request(
        self, model_version_id: int, user_id: Optional[int] = None
    ) -> JobsResponse:
        """Submit (or resubmit) the training job of a model version.

        A run that already carries a transaction id was paid for and is not
        charged again. Otherwise the price is computed from the parameters and
        debited first; a failed submission refunds that debit.

        Args:
            model_version_id: Model version being trained
            user_id: Requesting user; None for system resubmissions

        Raises:
            InvalidInputError: Unknown version, terminal state, bad or missing params
            AccessDeniedError: The user does not own the model
            InsufficientFundsError: Balance too low for the price
            RemoteRateLimitedError: Orchestrator answered 429
            RemoteSubmissionFailedError: Any other submission failure
        """
        async with await self.uow_factory() as uow:
            run = await uow.trainings.get_run(model_version_id)

        if run is None:
            raise InvalidInputError("Invalid model version")
        if user_id is not None and user_id != run.owner_id:
            raise AccessDeniedError("Invalid user")
        if run.status not in SUBMITTABLE_STATUSES:
            label = run.status.value if run.status else "untrained"
            raise InvalidInputError(f"Training cannot be submitted from state {label}")

        log = logger.bind(model_version_id=model_version_id, model_file_id=run.model_file_id)

        params: dict[str, Any] = run.training_details.get("params") or {}
        base_model: Optional[str] = run.training_details.get("baseModel")
        if not params:
            raise InvalidInputError("Missing training params")
        if base_model not in TRAINING_BASE_MODELS:
            raise InvalidInputError(f"Unsupported training base model: {base_model}")
        invalid = find_invalid_params(params, base_model)
        if invalid:
            raise InvalidInputError(
                f'Invalid settings for training: "{", ".join(invalid)}" outside allowed min/max.'
            )

        transaction_id = run.transaction_id
        debited = False
        if not transaction_id:
            transaction_id = await self._charge(run, params, base_model)
            debited = True

        payload = ImageResourceTrainingPayload(
            model=TRAINING_BASE_MODELS[base_model],  # type: ignore[index]
            training_data=run.training_url,
            callback_url=self.callback_url,
            max_retry_attempt=self.settings.max_training_retries,
            properties={
                "userId": run.owner_id,
                "transactionId": transaction_id,
                "modelFileId": run.model_file_id,
            },
            params={**params, "modelFileId": run.model_file_id, "loraName": run.model_name},
        )

        submitted_at = utcnow()
        try:
            response = await self.orchestrator.image_resource_training(
                payload, submitted_at=submitted_at
            )
            job = response.first
            if job is None:
                raise RemoteSubmissionFailedError("Orchestrator returned no job")
        except Exception as e:
            log.warning("training.submit.failed", error=str(e), exc_type=type(e).__name__)
            if debited:
                await self.ledger.refund_with_retries(
                    transaction_id, "Refund due to an error submitting the training job."
                )
            if isinstance(e, (RemoteRateLimitedError, RemoteSubmissionFailedError)):
                raise
            raise RemoteSubmissionFailedError(
                "We are not able to process your request at this time. Please try again later"
            ) from e

        async with await self.uow_factory() as uow:
            await uow.trainings.record_submission(
                model_version_id, job.job_id, transaction_id, submitted_at
            )

        log.info(
            "training.submitted",
            job_id=job.job_id,
            transaction_id=transaction_id,
            charged=debited,
            resubmission=bool(run.history),
        )
        return response

    async def _charge(self, run: TrainingRun, params: dict[str, Any], base_model: str) -> str:
        eta = calc_eta(
            params.get("networkDim"),
            params.get("networkAlpha"),
            params.get("targetSteps"),
            base_model,
        )
        if eta is None:
            raise InvalidInputError(
                "Could not compute the price for training - please check your parameters."
            )
        price = calc_price_from_eta(eta)

        balance = await self.ledger.get_balance(run.owner_id)
        if balance < price:
            raise InsufficientFundsError(
                f"You don't have enough funds to perform this action (required: {price})"
            )

        return await self.ledger.debit(
            from_account_id=run.owner_id,
            amount=price,
            type=TransactionType.TRAINING,
            details={"modelVersionId": run.model_version_id, "modelFileId": run.model_file_id},
            description="Model training",
        )

    async def get_submitted_at(self, model_version_id: int, user_id: int) -> datetime:
        async with await self.uow_factory() as uow:
            run = await uow.trainings.get_run(model_version_id)
        if run is None or run.owner_id != user_id:
            raise InvalidInputError("Invalid model version")
        return run.submitted_at

    async def move_asset(
        self, url: str, model_version_id: int, user_id: int, destination_uri: str
    ) -> MovedAsset:
        """Copy a training output asset to permanent storage.

        Args:
            url: Orchestrator asset URL (``.../v1/consumer/jobs/{jobId}/assets/{name}``)
            model_version_id: Model version owning the job
            user_id: Requesting user (must own the model)
            destination_uri: Pre-signed upload URL

        Raises:
            InvalidInputError: Bad URL, foreign model version or asset not found
        """
        match = ASSET_URL_PATTERN.search(url)
        if match is None:
            raise InvalidInputError("Invalid URL")
        job_id, asset_name = match.group("job_id"), match.group("asset_name")

        submitted_at = await self.get_submitted_at(model_version_id, user_id)
        try:
            result = await self.orchestrator.copy_asset(
                job_id, asset_name, destination_uri, submitted_at=submitted_at, wait=True
            )
        except (NotFoundError, RemoteSubmissionFailedError) as e:
            raise InvalidInputError(
                "Failed to move asset. Please try selecting the file again."
            ) from e

        if not result.found:
            raise InvalidInputError("Failed to move asset. Please try selecting the file again.")

        logger.info(
            "training.asset.moved",
            job_id=job_id,
            asset_name=asset_name,
            model_version_id=model_version_id,
            file_size=result.file_size,
        )
        return MovedAsset(new_url=destination_uri.split("?")[0], file_size=result.file_size)

    async def delete_assets(self, job_id: str, submitted_at: Optional[datetime] = None) -> Any:
        """Remove every remote asset of a training job."""
        response = await self.orchestrator.clear_assets(job_id, submitted_at=submitted_at, wait=True)
        logger.info("training.assets.cleared", job_id=job_id)
        return response.first.result if response.first else None
