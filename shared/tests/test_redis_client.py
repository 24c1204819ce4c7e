"""
Tests for the Redis client factory.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

import shared.redis_client as redis_client_module
from shared.redis_client import (
    RedisConfig,
    close_redis_client,
    create_redis_client,
    get_redis_info,
    ping_redis,
)


@pytest.fixture
def fake_redis_class(monkeypatch, mock_redis_client):
    monkeypatch.setattr(redis_client_module.redis.ConnectionPool, "from_url", MagicMock(return_value=MagicMock()))
    monkeypatch.setattr(redis_client_module.redis, "Redis", MagicMock(return_value=mock_redis_client))
    return mock_redis_client


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://cache:6380/2")
    monkeypatch.setenv("REDIS_MAX_CONNECTIONS", "many")
    monkeypatch.setenv("REDIS_CONNECT_RETRIES", "5")

    config = RedisConfig.from_env()

    assert config.url == "redis://cache:6380/2"
    assert config.max_connections == 50
    assert config.connect_retries == 5


def test_config_validation():
    with pytest.raises(ValueError):
        RedisConfig(max_connections=0)
    with pytest.raises(ValueError):
        RedisConfig(connect_retries=0)


@pytest.mark.asyncio
async def test_create_client_retries_ping(fake_redis_class):
    fake_redis_class.ping = AsyncMock(side_effect=[RedisConnectionError("refused"), True])
    delays = []

    async def record_sleep(seconds):
        delays.append(seconds)

    client = await create_redis_client(RedisConfig(connect_retries=3), sleep=record_sleep)

    assert client is fake_redis_class
    assert delays == [1.0]


@pytest.mark.asyncio
async def test_create_client_gives_up(fake_redis_class):
    fake_redis_class.ping = AsyncMock(side_effect=RedisConnectionError("refused"))

    async def no_sleep(seconds):
        return None

    with pytest.raises(RedisConnectionError):
        await create_redis_client(RedisConfig(connect_retries=2), sleep=no_sleep)

    fake_redis_class.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_ping_and_info(mock_redis_client):
    assert await ping_redis(mock_redis_client) is True

    info = await get_redis_info(mock_redis_client)
    assert info["redis_version"] == "7.2.4"
    assert info["uptime_seconds"] == 3600

    mock_redis_client.ping = AsyncMock(side_effect=OSError("down"))
    assert await ping_redis(mock_redis_client) is False


@pytest.mark.asyncio
async def test_close_client(mock_redis_client):
    await close_redis_client(None)
    await close_redis_client(mock_redis_client)

    mock_redis_client.aclose.assert_awaited_once()
    mock_redis_client.connection_pool.disconnect.assert_awaited_once()
