"""Resource resolution with a Redis read-through cache."""

from typing import Iterable, Sequence

import structlog
from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from genorch.core.config import Settings
from genorch.models.model_version import Availability
from genorch.schemas.generation import Resource
from genorch.services.features import FeatureFlags
from genorch.uow import UnitOfWorkFactory

logger = structlog.get_logger(__name__)

RESOURCE_CACHE_PREFIX = "generation:resource-data"


def resource_cache_key(model_version_id: int) -> str:
    return f"{RESOURCE_CACHE_PREFIX}:{model_version_id}"


class ResourceResolver:
    """Resolve model version ids into cached Resource descriptions.

    Cache hits come from Redis. Misses are loaded from the database in chunks of
    RESOURCE_FETCH_CHUNK_SIZE and written back with RESOURCE_CACHE_TTL_SECONDS.
    Ids with no matching row are left out of the result. Concurrent resolvers
    may populate the same key; the last write wins.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        redis: Redis,
        features: FeatureFlags,
        settings: Settings,
    ):
        self.uow_factory = uow_factory
        self.redis = redis
        self.features = features
        self.ttl = settings.resource_cache_ttl_seconds
        self.chunk_size = settings.resource_fetch_chunk_size

    async def resolve(self, ids: Iterable[int]) -> list[Resource]:
        """Resolve ids, preserving the first-seen order of the input."""
        unique_ids = list(dict.fromkeys(ids))
        if not unique_ids:
            return []

        found = await self._read_cache(unique_ids)
        missing = [i for i in unique_ids if i not in found]

        if missing:
            loaded: list[Resource] = []
            for start in range(0, len(missing), self.chunk_size):
                chunk = missing[start : start + self.chunk_size]
                async with await self.uow_factory() as uow:
                    loaded.extend(await uow.resources.get_resources(chunk))
            await self._write_cache(loaded)
            found.update({r.id: r for r in loaded})
            logger.debug(
                "resources.resolved",
                requested=len(unique_ids),
                cache_misses=len(missing),
                not_found=len(missing) - len(loaded),
            )

        return [found[i] for i in unique_ids if i in found]

    async def check_access(self, resources: Sequence[Resource], user_id: int) -> bool:
        """True unless a private resource is requested without a grant.

        When any resource is private, the user must hold a grant for every
        requested resource.
        """
        if not any(r.availability == Availability.PRIVATE for r in resources):
            return True

        ids = [r.id for r in resources]
        async with await self.uow_factory() as uow:
            granted = await uow.resources.get_accessible_ids(ids, user_id)
        return all(i in granted for i in ids)

    async def is_covered(self, model_version_id: int) -> bool:
        """Coverage flag combined with the operator's unavailable-resource list."""
        unavailable = await self.features.get_unavailable_resources()
        if model_version_id in unavailable:
            return False
        async with await self.uow_factory() as uow:
            return await uow.resources.get_coverage(model_version_id)

    async def _read_cache(self, ids: list[int]) -> dict[int, Resource]:
        try:
            values = await self.redis.mget([resource_cache_key(i) for i in ids])
        except RedisError as e:
            logger.warning("resources.cache.read_failed", error=str(e))
            return {}

        cached: dict[int, Resource] = {}
        for model_version_id, raw in zip(ids, values):
            if raw is None:
                continue
            try:
                cached[model_version_id] = Resource.model_validate_json(raw)
            except ValidationError:
                logger.warning("resources.cache.corrupt", model_version_id=model_version_id)
        return cached

    async def _write_cache(self, resources: list[Resource]) -> None:
        if not resources:
            return
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                for resource in resources:
                    pipe.set(
                        resource_cache_key(resource.id),
                        resource.model_dump_json(by_alias=True),
                        ex=self.ttl,
                    )
                await pipe.execute()
        except RedisError as e:
            logger.warning("resources.cache.write_failed", error=str(e))
