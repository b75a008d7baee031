"""Repository layer.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from genorch.repositories.generation_job import GenerationJobRepository
from genorch.repositories.resource import ResourceRepository
from genorch.repositories.system_state import SystemStateRepository
from genorch.repositories.training import TrainingRepository

__all__ = [
    "GenerationJobRepository",
    "ResourceRepository",
    "SystemStateRepository",
    "TrainingRepository",
]
