# booking_engine/services/infrastructure/redis_client.py
import uuid

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from booking_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Delete the key only if we still hold it
RELEASE_LOCK_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


class RedisLock:
    """
    Async context manager around SET NX PX.

    Entering yields True when the lock was acquired. The lock is released on
    exit only if the stored token is still ours, so an expired lock taken over
    by another worker is never deleted.
    """

    def __init__(self, client: redis.Redis, key: str, ttl_s: int):
        self._client = client
        self._key = key
        self._ttl_ms = ttl_s * 1000
        self._token = str(uuid.uuid4())
        self._acquired = False

    async def __aenter__(self) -> bool:
        self._acquired = bool(
            await self._client.set(self._key, self._token, px=self._ttl_ms, nx=True)
        )
        if not self._acquired:
            logger.debug("Lock busy", key=self._key)
        return self._acquired

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self._acquired:
            return
        try:
            await self._client.eval(RELEASE_LOCK_SCRIPT, 1, self._key, self._token)
        finally:
            self._acquired = False


class RedisClient:
    """Pooled Redis client used for per-provider sync locks."""

    def __init__(self, redis_url: str, max_connections: int = 20):
        self._redis_url = redis_url
        self._max_connections = max_connections
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            logger.info("Attempting Redis connection", url_preview=self._redis_url[:30] + "...")

            self.pool = ConnectionPool.from_url(
                self._redis_url,
                max_connections=self._max_connections,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info("Redis client initialized", max_connections=self._max_connections)

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self) -> None:
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

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()

    async def ping(self) -> bool:
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    def lock(self, key: str, ttl_s: int) -> RedisLock:
        if self.client is None:
            raise RuntimeError("Redis client not initialized. Call initialize() first.")
        return RedisLock(self.client, key, ttl_s)
