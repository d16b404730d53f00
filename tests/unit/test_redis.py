"""Tests for the shared Redis connection and key helpers."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from redis.exceptions import ConnectionError

from dentalbook.infra.redis import ExpiringKeyStore, RedisClient, check_redis_health, redis_key


@pytest.fixture(autouse=True)
def reset_client():
    """Each test starts with no shared connection."""
    RedisClient._client = None
    RedisClient._connected = False
    RedisClient._retry_after = 0.0
    yield
    RedisClient._client = None
    RedisClient._connected = False
    RedisClient._retry_after = 0.0


def _client(ping_error=None):
    client = MagicMock()
    client.ping = AsyncMock(side_effect=ping_error)
    client.aclose = AsyncMock()
    return client


class TestKeys:
    """Namespaced key construction."""

    def test_parts_are_joined_under_app_prefix(self):
        assert redis_key("wizard", "patient-1", "s-1") == "dentalbook:v1:wizard:patient-1:s-1"

    def test_guard_store_uses_same_namespace(self):
        store = ExpiringKeyStore("submission")

        assert store._key("patient-1") == "dentalbook:v1:submission:patient-1"


class TestRedisClient:
    """Connection reuse and reconnect pacing."""

    @pytest.mark.asyncio
    async def test_connection_reused(self):
        client = _client()
        with patch("dentalbook.infra.redis.redis.from_url", return_value=client) as from_url:
            first = await RedisClient.get_client()
            second = await RedisClient.get_client()

        assert first is client
        assert second is client
        assert from_url.call_count == 1
        assert RedisClient.is_connected()

    @pytest.mark.asyncio
    async def test_failed_connect_not_retried_immediately(self):
        client = _client(ping_error=ConnectionError("refused"))
        with patch("dentalbook.infra.redis.redis.from_url", return_value=client) as from_url:
            assert await RedisClient.get_client() is None
            assert await RedisClient.get_client() is None

        assert from_url.call_count == 1
        assert not RedisClient.is_connected()

    @pytest.mark.asyncio
    async def test_reconnects_after_interval(self):
        down = _client(ping_error=ConnectionError("refused"))
        up = _client()
        with patch("dentalbook.infra.redis.redis.from_url", side_effect=[down, up]) as from_url:
            assert await RedisClient.get_client() is None
            RedisClient._retry_after = 0.0
            assert await RedisClient.get_client() is up

        assert from_url.call_count == 2

    @pytest.mark.asyncio
    async def test_close_clears_pause(self):
        with patch("dentalbook.infra.redis.redis.from_url", return_value=_client(ConnectionError("refused"))):
            await RedisClient.get_client()

        await RedisClient.close()

        assert RedisClient._retry_after == 0.0

    @pytest.mark.asyncio
    async def test_failed_health_ping_forces_reconnect(self):
        client = _client()
        with patch("dentalbook.infra.redis.redis.from_url", return_value=client):
            await RedisClient.get_client()
        client.ping.side_effect = ConnectionError("gone")

        assert await check_redis_health() is False
        assert not RedisClient.is_connected()
