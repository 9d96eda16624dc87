import logging

from redis.asyncio import Redis
from redis.asyncio.lock import Lock
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..errors import StoreUnavailable
from ..settings import get_settings

logger = logging.getLogger(__name__)


class RedisCrudService:
    """Async CRUD operations against a Redis instance.

    Failures are logged and re-raised as StoreUnavailable so callers never
    mistake an unreachable store for a missing key.
    """

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
            raise StoreUnavailable(f"Redis unavailable: {e}") from e

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    def _require_client(self) -> Redis:
        if self._client is None:
            raise StoreUnavailable("Redis client is not connected")
        return self._client

    async def get(self, key: str) -> str | None:
        """Return the value for key, or None if missing."""
        client = self._require_client()
        try:
            value = await client.get(key)
            return value if value is None else str(value)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis get %s failed: %s", key, e)
            raise StoreUnavailable(f"Redis get {key} failed: {e}") from e

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
    ) -> None:
        """Set key to value. If ttl_seconds is set, the key will expire."""
        client = self._require_client()
        try:
            if ttl_seconds is not None and ttl_seconds > 0:
                await client.setex(key, ttl_seconds, value)
            else:
                await client.set(key, value)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis set %s failed: %s", key, e)
            raise StoreUnavailable(f"Redis set {key} failed: {e}") from e

    def lock(self, key: str, timeout: float, blocking_timeout: float | None = None) -> Lock:
        """Return a distributed lock on key (use as ``async with``)."""
        client = self._require_client()
        return client.lock(key, timeout=timeout, blocking_timeout=blocking_timeout)


def get_redis_crud_service() -> RedisCrudService | None:
    """Return a Redis CRUD service if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())
