"""Training repository.

Reads and writes the local projection of training jobs: the model version's
``training_status`` plus ``trainingResults`` inside the training data file's
metadata.
"""

import copy
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genorch.core.timezone import isoformat, parse_datetime
from genorch.models.model import Model, ModelUploadType
from genorch.models.model_file import TRAINING_DATA_FILE_TYPE, ModelFile
from genorch.models.model_version import ModelVersion, TrainingStatus
from genorch.schemas.training import TrainingRun


class TrainingRepository:
    """Repository for training runs (ModelVersion + Model + training data ModelFile)."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    def _runs_query(self):
        return (
            select(ModelVersion, Model, ModelFile)  # type: ignore[call-overload]
            .join(Model, Model.id == ModelVersion.model_id)  # type: ignore[arg-type]
            .join(ModelFile, ModelFile.model_version_id == ModelVersion.id)  # type: ignore[arg-type]
            .where(ModelFile.type == TRAINING_DATA_FILE_TYPE)  # type: ignore[arg-type]
        )

    async def get_stale_runs(
        self,
        statuses: Sequence[TrainingStatus],
        updated_after: datetime,
        updated_before: datetime,
    ) -> list[TrainingRun]:
        """Find trained-model runs in ``statuses`` last updated inside the window.

        The window is bounded on both sides so the sweep never scans the whole
        table: ``updated_after`` is the lookback horizon and ``updated_before``
        the previous sweep's watermark.

        Args:
            statuses: Local training statuses to include
            updated_after: Lower bound on ModelVersion.updated_at (inclusive)
            updated_before: Upper bound on ModelVersion.updated_at (inclusive)

        Returns:
            Runs ordered by model file id, newest first
        """
        result = await self.session.execute(
            self._runs_query()
            .where(Model.upload_type == ModelUploadType.TRAINED)  # type: ignore[arg-type]
            .where(ModelVersion.training_status.in_(list(statuses)))  # type: ignore[union-attr]
            .where(ModelVersion.updated_at >= updated_after)  # type: ignore[arg-type]
            .where(ModelVersion.updated_at <= updated_before)  # type: ignore[arg-type]
            .order_by(ModelFile.id.desc())  # type: ignore[attr-defined]
        )
        return [_to_run(version, model, file) for version, model, file in result.all()]

    async def get_run(self, model_version_id: int) -> Optional[TrainingRun]:
        result = await self.session.execute(
            self._runs_query().where(ModelVersion.id == model_version_id)  # type: ignore[arg-type]
        )
        row = result.first()
        if row is None:
            return None
        version, model, file = row
        return _to_run(version, model, file)

    async def record_submission(
        self,
        model_version_id: int,
        job_id: str,
        transaction_id: Optional[str],
        submitted_at: datetime,
    ) -> None:
        """Store a successful (re)submission and move the version to Submitted.

        Appends ``{time, status: Submitted, jobId}`` to the history and replaces
        ``jobId``, ``transactionId`` and ``submittedAt``.

        Raises:
            InvalidStateTransition: If the training already reached a terminal state
        """
        version, file = await self._load(model_version_id)
        version.mark_submitted()

        metadata = copy.deepcopy(file.file_metadata or {})
        results = metadata.setdefault("trainingResults", {})
        results.setdefault("history", []).append(
            {
                "time": isoformat(submitted_at),
                "status": TrainingStatus.SUBMITTED.value,
                "jobId": job_id,
            }
        )
        results["jobId"] = job_id
        results["transactionId"] = transaction_id
        results["submittedAt"] = isoformat(submitted_at)
        # Reassign so the JSON column is flagged dirty
        file.file_metadata = metadata

        self.session.add(version)
        self.session.add(file)
        await self.session.flush()

    async def update_status(self, model_version_id: int, status: TrainingStatus) -> None:
        """Apply a lifecycle transition to the model version.

        Raises:
            InvalidStateTransition: If the transition is not allowed
            ValueError: For statuses the lifecycle never sets directly
        """
        version = await self.session.get(ModelVersion, model_version_id)
        if version is None:
            raise LookupError(f"ModelVersion {model_version_id} not found")

        if status == TrainingStatus.PROCESSING:
            version.mark_processing()
        elif status == TrainingStatus.IN_REVIEW:
            version.mark_in_review()
        elif status == TrainingStatus.FAILED:
            version.mark_failed()
        else:
            raise ValueError(f"Unsupported training status update: {status.value}")

        self.session.add(version)
        await self.session.flush()

    async def has_epochs(self, model_file_id: int) -> bool:
        """True if the training run produced at least one epoch artifact."""
        file = await self.session.get(ModelFile, model_file_id)
        if file is None:
            return False
        epochs = file.training_results.get("epochs")
        return isinstance(epochs, list) and len(epochs) > 0

    async def _load(self, model_version_id: int) -> tuple[ModelVersion, ModelFile]:
        result = await self.session.execute(
            select(ModelVersion, ModelFile)  # type: ignore[call-overload]
            .join(ModelFile, ModelFile.model_version_id == ModelVersion.id)  # type: ignore[arg-type]
            .where(ModelVersion.id == model_version_id)  # type: ignore[arg-type]
            .where(ModelFile.type == TRAINING_DATA_FILE_TYPE)  # type: ignore[arg-type]
        )
        row = result.first()
        if row is None:
            raise LookupError(f"No training data for model version {model_version_id}")
        return row[0], row[1]


def _to_run(version: ModelVersion, model: Model, file: ModelFile) -> TrainingRun:
    results = file.training_results
    history = list(results.get("history") or [])

    # Older runs only recorded the job id in the history
    job_id = results.get("jobId") or (history[-1].get("jobId") if history else None)
    submitted_at = (
        parse_datetime(results.get("submittedAt"))
        or (parse_datetime(history[0].get("time")) if history else None)
        or version.updated_at
    )

    return TrainingRun(
        model_file_id=file.id,
        model_version_id=version.id,
        model_name=model.name,
        owner_id=model.user_id,
        status=version.training_status,
        training_url=file.url,
        training_details=version.training_details or {},
        job_id=job_id,
        transaction_id=results.get("transactionId"),
        submitted_at=submitted_at,
        updated_at=version.updated_at,
        history=history,
    )
