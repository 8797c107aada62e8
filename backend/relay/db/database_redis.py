import redis.asyncio as redis

from relay.core.config import REDIS_URL


class RedisManager:
    """Process-wide Redis connection pool (created lazily)."""

    _pool = None

    @classmethod
    def get_client(cls) -> redis.Redis:
        """
        Returns an async Redis client from the global connection pool.
        """
        if cls._pool is None:
            cls._pool = redis.ConnectionPool.from_url(REDIS_URL, decode_responses=True)
        return redis.Redis(connection_pool=cls._pool)

    @classmethod
    async def close(cls):
        if cls._pool is not None:
            await cls._pool.disconnect()
            cls._pool = None
