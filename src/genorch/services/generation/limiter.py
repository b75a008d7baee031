"""Per-user generation quota over a rolling window."""

from datetime import datetime, timedelta
from typing import Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from genorch.core.config import Settings
from genorch.core.timezone import isoformat, parse_datetime, utcnow
from genorch.services.features import FeatureFlags
from genorch.uow import UnitOfWorkFactory

logger = structlog.get_logger(__name__)

COUNTER_PREFIX = "generation:count"
LIMIT_HIT_PREFIX = "generation:limit-hit"


class QuotaLimiter:
    """Cache-aside counter of images generated per user.

    The first check in a window seeds the Redis counter from the
    ``generation_jobs`` table (``SET NX EX`` so concurrent seeders agree); every
    later check and increment touches Redis only. Increments use ``INCRBY`` and
    are atomic across processes.

    Redis outages fail open: the request is allowed and the miss is logged.
    """

    def __init__(
        self,
        redis: Redis,
        uow_factory: UnitOfWorkFactory,
        features: FeatureFlags,
        settings: Settings,
    ):
        self.redis = redis
        self.uow_factory = uow_factory
        self.features = features
        self.window = timedelta(hours=settings.generation_limit_window_hours)

    @property
    def window_seconds(self) -> int:
        return int(self.window.total_seconds())

    def counter_key(self, user_key: str) -> str:
        return f"{COUNTER_PREFIX}:{user_key}"

    def limit_hit_key(self, user_key: str) -> str:
        return f"{LIMIT_HIT_PREFIX}:{user_key}"

    async def get_count(self, user_key: str) -> int:
        """Current count, seeding the counter from the database if absent."""
        key = self.counter_key(user_key)
        raw = await self.redis.get(key)
        if raw is not None:
            return int(raw)

        seed = await self._fetch_count(user_key)
        await self.redis.set(key, seed, nx=True, ex=self.window_seconds)
        # Another process may have seeded first
        raw = await self.redis.get(key)
        return int(raw) if raw is not None else seed

    async def has_exceeded_limit(self, user_key: str, tier: str = "free") -> bool:
        """True if the user reached the tier's limit for the current window.

        The first time the limit is reached, the hit time is recorded so the
        caller can tell the user when to retry.
        """
        limit = await self.features.get_generation_limit(tier)
        if limit is None:
            return False

        try:
            count = await self.get_count(user_key)
            if count < limit:
                return False
            await self.redis.set(
                self.limit_hit_key(user_key),
                isoformat(utcnow()),
                nx=True,
                ex=self.window_seconds,
            )
        except RedisError as e:
            logger.warning("limiter.check_failed", user_key=user_key, error=str(e))
            return False

        logger.info("limiter.limit_exceeded", user_key=user_key, tier=tier, count=count, limit=limit)
        return True

    async def get_limit_hit_time(self, user_key: str) -> Optional[datetime]:
        try:
            raw = await self.redis.get(self.limit_hit_key(user_key))
        except RedisError as e:
            logger.warning("limiter.read_failed", user_key=user_key, error=str(e))
            return None
        return parse_datetime(raw) if raw else None

    async def increment(self, user_key: str, weight: int = 1) -> Optional[int]:
        """Add ``weight`` images to the user's counter.

        Returns:
            New counter value, or None if Redis was unavailable
        """
        key = self.counter_key(user_key)
        try:
            await self.get_count(user_key)
            value = await self.redis.incrby(key, weight)
            # The key may have expired between seeding and INCRBY
            if await self.redis.ttl(key) == -1:
                await self.redis.expire(key, self.window_seconds)
        except RedisError as e:
            logger.warning("limiter.increment_failed", user_key=user_key, error=str(e))
            return None
        return int(value)

    async def _fetch_count(self, user_key: str) -> int:
        try:
            user_id = int(user_key)
        except ValueError:
            return 0
        async with await self.uow_factory() as uow:
            return await uow.generation_jobs.count_images_since(user_id, utcnow() - self.window)
