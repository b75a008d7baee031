"""Training domain models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from genorch.models.model_version import TrainingStatus


class TrainingRun(BaseModel):
    """A training job as seen by the submission path and the lifecycle monitor."""

    model_config = ConfigDict(protected_namespaces=())

    model_file_id: int
    model_version_id: int
    model_name: str
    owner_id: int
    status: Optional[TrainingStatus] = None
    training_url: str
    training_details: dict = Field(default_factory=dict)
    job_id: Optional[str] = None
    transaction_id: Optional[str] = None
    submitted_at: datetime
    updated_at: datetime
    history: list[dict] = Field(default_factory=list)

    @property
    def resubmission_count(self) -> int:
        """Number of submissions beyond the first one."""
        submissions = [h for h in self.history if h.get("status") == TrainingStatus.SUBMITTED.value]
        return max(0, len(submissions) - 1)
