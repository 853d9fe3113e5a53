import logging
from typing import Any, Dict, List, Sequence, Tuple

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import Settings, get_settings

logger = logging.getLogger(__name__)

# (command name, positional args) queued on a MULTI/EXEC pipeline
Command = Tuple[str, Sequence[Any]]


class RedisCrudService:
    """Async CRUD operations against a Redis instance."""

    def __init__(self, url: str) -> None:
        """Create a Redis client for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(
            self._url,
            decode_responses=True,
        )
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis | None:
        """Return the underlying Redis client, or None if not connected."""
        return self._client

    async def delete(self, *keys: str) -> bool:
        """Delete keys. Returns True if keys were deleted or did not exist."""
        if self._client is None:
            return False
        try:
            await self._client.delete(*keys)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis delete %s failed: %s", keys, e)
            return False

    async def exists(self, key: str) -> bool:
        """Return True if key exists."""
        if self._client is None:
            return False
        try:
            n = await self._client.exists(key)
            return bool(n)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis exists %s failed: %s", key, e)
            return False

    async def lrange(self, key: str, start: int, end: int) -> List[str]:
        """Return list elements between start and end (inclusive), or [] on error."""
        if self._client is None:
            return []
        try:
            return [str(v) for v in await self._client.lrange(key, start, end)]
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis lrange %s failed: %s", key, e)
            return []

    async def hgetall(self, key: str) -> Dict[str, str]:
        """Return all fields of a hash, or {} if missing or on error."""
        if self._client is None:
            return {}
        try:
            return dict(await self._client.hgetall(key))
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis hgetall %s failed: %s", key, e)
            return {}

    async def transaction(self, commands: Sequence[Command]) -> List[Any] | None:
        """Run commands atomically (MULTI/EXEC). Returns replies, or None on failure."""
        if self._client is None:
            return None
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                for name, args in commands:
                    getattr(pipe, name)(*args)
                return await pipe.execute()
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis transaction failed: %s", e)
            return None


def get_redis_crud_service(settings: Settings | None = None) -> RedisCrudService | None:
    """Return a Redis CRUD service if redis_url is configured, else None."""
    settings = settings or get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())
