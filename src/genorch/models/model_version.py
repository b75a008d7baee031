"""ModelVersion entity - one immutable version of a model, with training lifecycle."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from genorch.core.timezone import utcnow


class Availability(str, Enum):
    """Who may use a model version for generation."""

    PUBLIC = "Public"
    PRIVATE = "Private"


class TrainingStatus(str, Enum):
    """Local projection of a training job's lifecycle."""

    PENDING = "Pending"
    SUBMITTED = "Submitted"
    PROCESSING = "Processing"
    IN_REVIEW = "InReview"
    APPROVED = "Approved"
    FAILED = "Failed"


TERMINAL_TRAINING_STATUSES = (
    TrainingStatus.IN_REVIEW,
    TrainingStatus.APPROVED,
    TrainingStatus.FAILED,
)


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid training state transition."""

    pass


class ModelVersion(SQLModel, table=True):
    """ModelVersion is the unit referenced by generation jobs and trained by training jobs."""

    __tablename__ = "model_versions"  # type: ignore[assignment]

    id: int = Field(primary_key=True)
    model_id: int = Field(foreign_key="models.id", index=True)
    name: str = Field(max_length=255)
    base_model: str = Field(max_length=50)
    trained_words: list = Field(default_factory=list, sa_column=Column(JSON))
    availability: Availability = Field(default=Availability.PUBLIC)
    settings: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    clip_skip: Optional[int] = Field(default=None)

    # Training fields (only set for trained models)
    training_status: Optional[TrainingStatus] = Field(default=None, index=True)
    training_details: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utcnow, index=True)

    def mark_submitted(self) -> None:
        """Record a (re)submission of the training job.

        Allowed from Pending, and from Submitted/Processing when a stuck job is
        resubmitted as a new attempt.

        Raises:
            InvalidStateTransition: If the training already reached a terminal state
        """
        if self.training_status not in (
            TrainingStatus.PENDING,
            TrainingStatus.SUBMITTED,
            TrainingStatus.PROCESSING,
        ):
            raise InvalidStateTransition(
                f"Cannot mark submitted from {_label(self.training_status)}. "
                "Training must be pending, submitted or processing."
            )
        self.training_status = TrainingStatus.SUBMITTED
        self.updated_at = utcnow()

    def mark_processing(self) -> None:
        """Transition from submitted to processing.

        Raises:
            InvalidStateTransition: If current status is not submitted
        """
        if self.training_status != TrainingStatus.SUBMITTED:
            raise InvalidStateTransition(
                f"Cannot mark processing from {_label(self.training_status)}. "
                "Training must be in submitted state."
            )
        self.training_status = TrainingStatus.PROCESSING
        self.updated_at = utcnow()

    def mark_in_review(self) -> None:
        """Transition from submitted/processing to in review (outputs are ready).

        Raises:
            InvalidStateTransition: If current status is not submitted or processing
        """
        if self.training_status not in (TrainingStatus.SUBMITTED, TrainingStatus.PROCESSING):
            raise InvalidStateTransition(
                f"Cannot mark in review from {_label(self.training_status)}. "
                "Training must be in submitted or processing state."
            )
        self.training_status = TrainingStatus.IN_REVIEW
        self.updated_at = utcnow()

    def mark_failed(self) -> None:
        """Transition from any non-terminal state to failed.

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.training_status in TERMINAL_TRAINING_STATUSES:
            raise InvalidStateTransition(
                f"Cannot mark failed from terminal state {_label(self.training_status)}."
            )
        self.training_status = TrainingStatus.FAILED
        self.updated_at = utcnow()


def _label(status: Optional[TrainingStatus]) -> str:
    return status.value if status else "untrained"
