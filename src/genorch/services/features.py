"""Runtime feature flags shared by all processes.

Operators toggle these in the Redis hash ``system:features``; settings supply the
defaults when a field is missing or Redis is unreachable.
"""

import json
from typing import Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from genorch.core.config import Settings
from genorch.schemas.generation import GenerationStatus

logger = structlog.get_logger(__name__)

FEATURES_KEY = "system:features"
LIMITS_KEY = "generation:limits"

GENERATION_STATUS_FIELD = "generation:status"
ALTERNATIVES_FIELD = "generation:alternatives"
UNAVAILABLE_RESOURCES_FIELD = "generation:unavailable-resources"
MINOR_FALLBACK_FIELD = "generation:minor-fallback"


class FeatureFlags:
    """Read access to the global feature switches."""

    def __init__(self, redis: Redis, settings: Settings):
        self.redis = redis
        self.settings = settings

    async def get_generation_status(self) -> GenerationStatus:
        raw = await self._hget(FEATURES_KEY, GENERATION_STATUS_FIELD)
        if not raw:
            return GenerationStatus()
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("features.generation_status.invalid", raw=raw)
            return GenerationStatus()
        return GenerationStatus(
            available=data.get("available", True) is not False, message=data.get("message")
        )

    async def alternatives_available(self) -> bool:
        return (await self._hget(FEATURES_KEY, ALTERNATIVES_FIELD)) == "true"

    async def get_unavailable_resources(self) -> list[int]:
        raw = await self._hget(FEATURES_KEY, UNAVAILABLE_RESOURCES_FIELD)
        if not raw:
            return []
        try:
            return [int(x) for x in json.loads(raw)]
        except (ValueError, TypeError):
            logger.warning("features.unavailable_resources.invalid", raw=raw)
            return []

    async def minor_fallback_enabled(self) -> bool:
        raw = await self._hget(FEATURES_KEY, MINOR_FALLBACK_FIELD)
        if raw is None:
            return self.settings.minor_fallback_system
        return raw == "true"

    async def get_generation_limit(self, tier: str) -> Optional[int]:
        """Max images per window for a user tier (None: unlimited)."""
        raw = await self._hget(LIMITS_KEY, tier)
        if raw is not None:
            try:
                return int(raw)
            except ValueError:
                logger.warning("features.generation_limit.invalid", tier=tier, raw=raw)
        limits = self.settings.generation_limits
        # Unknown tiers get the free allowance
        return limits.get(tier, limits.get("free"))

    async def set_unavailable_resources(self, ids: list[int]) -> None:
        await self.redis.hset(FEATURES_KEY, UNAVAILABLE_RESOURCES_FIELD, json.dumps(ids))

    async def _hget(self, key: str, field: str) -> Optional[str]:
        try:
            return await self.redis.hget(key, field)
        except RedisError as e:
            logger.warning("features.read_failed", key=key, field=field, error=str(e))
            return None
