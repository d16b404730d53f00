"""
Redis Connection Management

One shared connection for everything the booking layer keeps in Redis:
wizard sessions, in-flight submission guards and the realtime pub/sub
feed. When Redis is down, callers get None and degrade to process-local
state; reconnects are attempted at most once per reconnect interval so
wizard requests do not each wait out a connect timeout.
"""

import logging
import time
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from dentalbook.config import settings

# Logger
logger = logging.getLogger(__name__)

# Namespace for every key this service writes
APP_PREFIX = "dentalbook:v1:"


def redis_key(*parts: str) -> str:
    """Namespaced key, e.g. redis_key("wizard", actor_id, session_id)."""
    return APP_PREFIX + ":".join(parts)


class RedisClient:
    """
    Shared Redis connection for sessions, guards and the realtime feed.

    A failed connect starts a quiet period (redis_reconnect_interval)
    during which get_client() answers None straight away.
    """

    _client: Optional[Redis] = None
    _connected: bool = False
    _retry_after: float = 0.0

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """
        Get or create the shared client.

        Returns:
            Redis client, or None while Redis is unavailable
        """
        if cls._client is not None and cls._connected:
            return cls._client

        if time.monotonic() < cls._retry_after:
            return None

        try:
            cls._client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=settings.redis_socket_timeout,
                socket_timeout=settings.redis_socket_timeout,
                retry_on_timeout=True,
                retry=Retry(ExponentialBackoff(), retries=3),
            )
            await cls._client.ping()
            cls._connected = True
            cls._retry_after = 0.0
            logger.info("Redis connection established - sessions and guards are shared")
            return cls._client

        except (ConnectionError, TimeoutError, RedisError) as e:
            cls._connected = False
            cls._client = None
            cls._retry_after = time.monotonic() + settings.redis_reconnect_interval
            logger.error(
                f"Failed to connect to Redis: {e} - using process-local sessions and guards, "
                f"next attempt in {settings.redis_reconnect_interval:.0f}s"
            )
            return None

    @classmethod
    def mark_unavailable(cls) -> None:
        """Drop the connection after a command failure; the next get_client() reconnects."""
        cls._connected = False

    @classmethod
    async def close(cls) -> None:
        """Close the shared connection."""
        if cls._client is not None:
            try:
                await cls._client.aclose()
                logger.info("Redis connection closed")
            except RedisError as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                cls._client = None
                cls._connected = False
        cls._retry_after = 0.0

    @classmethod
    def is_connected(cls) -> bool:
        """Check if Redis is connected."""
        return cls._connected


async def get_redis() -> Optional[Redis]:
    """
    Shared Redis client, or None if Redis is unavailable.
    """
    return await RedisClient.get_client()


async def check_redis_health() -> bool:
    """
    Check Redis connectivity for the readiness check.

    Returns:
        True if Redis is accessible and responding, False otherwise
    """
    try:
        client = await get_redis()
        if client is None:
            return False

        await client.ping()
        return True

    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        RedisClient.mark_unavailable()
        return False


class ExpiringKeyStore:
    """
    Short-lived marker keys: SET NX with expiry.

    Keys: dentalbook:v1:{namespace}:{identifier}

    Falls back to a process-local dict of monotonic deadlines when Redis
    is unavailable, so a guard still holds within one process.
    """

    def __init__(self, namespace: str, redis_client: Optional[Redis] = None):
        self.namespace = namespace
        self.redis = redis_client
        self._local: dict[str, float] = {}

    def _key(self, identifier: str) -> str:
        return redis_key(self.namespace, identifier)

    def _local_acquire(self, key: str, ttl: float) -> bool:
        now = time.monotonic()
        deadline = self._local.get(key)
        if deadline is not None and deadline > now:
            return False
        self._local[key] = now + ttl
        return True

    async def acquire(self, identifier: str, ttl: float) -> bool:
        """
        Set the marker if absent.

        Args:
            identifier: What the marker guards
            ttl: Seconds until automatic release

        Returns:
            True if acquired, False if already held
        """
        key = self._key(identifier)

        if self.redis is None:
            return self._local_acquire(key, ttl)

        try:
            acquired = await self.redis.set(key, "1", nx=True, px=max(1, int(ttl * 1000)))
            return bool(acquired)
        except RedisError as e:
            logger.error(f"Guard acquire failed for {identifier}: {e} - using local guard")
            return self._local_acquire(key, ttl)

    async def release(self, identifier: str) -> None:
        """Remove the marker."""
        key = self._key(identifier)
        self._local.pop(key, None)

        if self.redis is None:
            return

        try:
            await self.redis.delete(key)
        except RedisError as e:
            logger.error(f"Guard release failed for {identifier}: {e}")

    async def is_held(self, identifier: str) -> bool:
        """Check whether the marker is currently set."""
        key = self._key(identifier)

        if self.redis is not None:
            try:
                return bool(await self.redis.exists(key))
            except RedisError as e:
                logger.error(f"Guard check failed for {identifier}: {e}")

        deadline = self._local.get(key)
        return deadline is not None and deadline > time.monotonic()


# Singleton
_guard_store: Optional[ExpiringKeyStore] = None


async def get_submission_guard_store() -> ExpiringKeyStore:
    """
    Get the store for in-flight booking submission guards.

    Returned even if Redis is unavailable (process-local fallback).
    """
    global _guard_store
    client = await get_redis()
    if _guard_store is None:
        _guard_store = ExpiringKeyStore("submission", client)
    else:
        _guard_store.redis = client
    return _guard_store
