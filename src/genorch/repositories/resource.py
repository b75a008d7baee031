"""Resource repository.

Read-only access to model versions as generation resources, their coverage
and the access grants for private versions.
"""

from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genorch.models.entity_access import EntityAccess
from genorch.models.generation_coverage import GenerationCoverage
from genorch.models.model import Model
from genorch.models.model_version import ModelVersion
from genorch.schemas.generation import Resource

MODEL_VERSION_ENTITY = "ModelVersion"


class ResourceRepository:
    """Repository for generation resources (ModelVersion + Model + coverage)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_resources(self, ids: Sequence[int]) -> list[Resource]:
        """Load resources by model version id. Unknown ids are simply absent.

        Args:
            ids: Model version ids (callers chunk large batches)

        Returns:
            Resources in no particular order
        """
        if not ids:
            return []

        result = await self.session.execute(
            select(ModelVersion, Model, GenerationCoverage.covered)  # type: ignore[call-overload]
            .join(Model, Model.id == ModelVersion.model_id)  # type: ignore[arg-type]
            .outerjoin(
                GenerationCoverage,
                GenerationCoverage.model_version_id == ModelVersion.id,  # type: ignore[arg-type]
            )
            .where(ModelVersion.id.in_(list(ids)))  # type: ignore[union-attr]
        )
        return [_to_resource(version, model, covered) for version, model, covered in result.all()]

    async def get_coverage(self, model_version_id: int) -> bool:
        result = await self.session.execute(
            select(GenerationCoverage.covered).where(  # type: ignore[call-overload]
                GenerationCoverage.model_version_id == model_version_id  # type: ignore[arg-type]
            )
        )
        return bool(result.scalar_one_or_none())

    async def get_accessible_ids(
        self, entity_ids: Sequence[int], accessor_id: int, entity_type: str = MODEL_VERSION_ENTITY
    ) -> set[int]:
        """Return the subset of ``entity_ids`` the accessor has been granted."""
        if not entity_ids:
            return set()

        result = await self.session.execute(
            select(EntityAccess.entity_id).where(  # type: ignore[call-overload]
                EntityAccess.entity_type == entity_type,  # type: ignore[arg-type]
                EntityAccess.accessor_id == accessor_id,  # type: ignore[arg-type]
                EntityAccess.entity_id.in_(list(entity_ids)),  # type: ignore[attr-defined]
            )
        )
        return set(result.scalars().all())


def _to_resource(version: ModelVersion, model: Model, covered: bool | None) -> Resource:
    settings = version.settings or {}
    return Resource(
        id=version.id,
        model_id=model.id,
        name=version.name,
        model_name=model.name,
        model_type=model.type,
        base_model=version.base_model,
        trained_words=list(version.trained_words or []),
        covered=bool(covered),
        availability=version.availability,
        poi=model.poi,
        strength=settings.get("strength", 1),
        min_strength=settings.get("minStrength", -1),
        max_strength=settings.get("maxStrength", 2),
    )
