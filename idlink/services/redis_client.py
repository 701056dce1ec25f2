# idlink/services/redis_client.py
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from idlink.config import settings
from idlink.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RedisStoreError(Exception):
    """Redis was unreachable or a command failed."""


class FastRedisClient:
    """Pooled async Redis client shared by the guild, identity and session stores.

    Reads and writes raise :class:`RedisStoreError` on failure instead of
    returning an empty value, so an outage is never mistaken for a missing key.
    """

    def __init__(self, url: str | None = None, client: redis.Redis | None = None):
        self.url = url
        self.pool = None
        # an injected client is used as is, without a pool of our own
        self.client = client
        self._initialized = client is not None

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            redis_url = self.url or settings.REDIS_URL

            logger.info("Attempting Redis connection", url_preview=redis_url[:30] + "...")

            self.pool = ConnectionPool.from_url(
                redis_url,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,  # Auto-decode strings
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info(
                "Redis client initialized successfully",
                max_connections=settings.REDIS_MAX_CONNECTIONS,
            )

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        """Ensure Redis is initialized, fallback if not"""
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()
            if not self._initialized:
                raise ConnectionError("Redis client not available")

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            result = await self.client.ping()
            return bool(result)
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        try:
            await self._ensure_initialized()
            result = await self.client.get(key)
            return result if result else None
        except Exception as e:
            logger.error("Redis GET failed", key=key[:30], error=str(e))
            raise RedisStoreError(f"GET {key[:30]} failed: {e}") from e

    async def mget(self, keys: list[str]) -> list[str | None]:
        if not keys:
            return []
        try:
            await self._ensure_initialized()
            return list(await self.client.mget(keys))
        except Exception as e:
            logger.error("Redis MGET failed", key_count=len(keys), error=str(e))
            raise RedisStoreError(f"MGET failed: {e}") from e

    async def smembers(self, key: str) -> set[str]:
        try:
            await self._ensure_initialized()
            return set(await self.client.smembers(key))
        except Exception as e:
            logger.error("Redis SMEMBERS failed", key=key[:30], error=str(e))
            raise RedisStoreError(f"SMEMBERS {key[:30]} failed: {e}") from e

    async def set(self, key: str, value: str) -> bool:
        try:
            await self._ensure_initialized()
            return bool(await self.client.set(key, value))
        except Exception as e:
            logger.error("Redis SET failed", key=key[:30], error=str(e))
            raise RedisStoreError(f"SET {key[:30]} failed: {e}") from e

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        """Set value with TTL"""
        try:
            await self._ensure_initialized()

            if ttl_s:
                result = await self.client.setex(key, ttl_s, value)
            else:
                result = await self.client.set(key, value)
            return bool(result)
        except Exception as e:
            logger.error("Redis SET failed", key=key[:30], error=str(e))
            raise RedisStoreError(f"SET {key[:30]} failed: {e}") from e

    async def getdel(self, key: str) -> str | None:
        """Read and delete ``key`` in one atomic step."""
        try:
            await self._ensure_initialized()
            result = await self.client.getdel(key)
            return result if result else None
        except Exception as e:
            logger.error("Redis GETDEL failed", key=key[:30], error=str(e))
            raise RedisStoreError(f"GETDEL {key[:30]} failed: {e}") from e

    async def delete(self, *keys: str) -> int:
        try:
            await self._ensure_initialized()
            return int(await self.client.delete(*keys))
        except Exception as e:
            logger.error("Redis DELETE failed", key=keys[0][:30] if keys else "", error=str(e))
            raise RedisStoreError(f"DELETE failed: {e}") from e

    async def replace_set(self, key: str, members: Iterable[str]) -> None:
        """Atomically replace the contents of a set."""
        values = sorted(set(members))
        try:
            await self._ensure_initialized()
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                if values:
                    pipe.sadd(key, *values)
                await pipe.execute()
        except Exception as e:
            logger.error("Redis set replace failed", key=key[:30], error=str(e))
            raise RedisStoreError(f"Replacing {key[:30]} failed: {e}") from e

    async def transaction(
        self, func: Callable[[Any], Awaitable[Any]], *watches: str
    ) -> Any:
        """
        Run ``func`` as an optimistic WATCH/MULTI/EXEC transaction.

        ``func`` receives the pipeline in immediate mode (reads are awaited),
        must call ``pipe.multi()`` before queueing writes, and may raise to
        abort without writing anything. Conflicting concurrent writes to a
        watched key make redis-py retry ``func``. Returns ``func``'s result.
        """
        await self._ensure_initialized()
        try:
            return await self.client.transaction(func, *watches, value_from_callable=True)
        except redis.RedisError as e:
            logger.error("Redis transaction failed", keys=[k[:30] for k in watches], error=str(e))
            raise RedisStoreError(f"Transaction failed: {e}") from e


# Global instance
fast_redis = FastRedisClient()
