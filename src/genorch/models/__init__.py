"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata.
"""

from genorch.models.entity_access import EntityAccess
from genorch.models.generation_coverage import GenerationCoverage
from genorch.models.generation_job import GenerationJob
from genorch.models.model import Model, ModelType, ModelUploadType
from genorch.models.model_file import TRAINING_DATA_FILE_TYPE, ModelFile
from genorch.models.model_version import (
    Availability,
    InvalidStateTransition,
    ModelVersion,
    TrainingStatus,
)
from genorch.models.system_state import SystemState

__all__ = [
    "Availability",
    "EntityAccess",
    "GenerationCoverage",
    "GenerationJob",
    "InvalidStateTransition",
    "Model",
    "ModelFile",
    "ModelType",
    "ModelUploadType",
    "ModelVersion",
    "SystemState",
    "TRAINING_DATA_FILE_TYPE",
    "TrainingStatus",
]
