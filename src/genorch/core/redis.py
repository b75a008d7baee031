"""Redis client factory for counters, caches, feature flags and locks."""

from redis.asyncio import Redis

from genorch.core.config import Settings


def create_redis_client(settings: Settings) -> Redis:
    """Create an async Redis client returning decoded strings.

    Args:
        settings: Application settings (REDIS_URL)

    Returns:
        redis.asyncio.Redis instance (connections are opened lazily)
    """
    return Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
    )
