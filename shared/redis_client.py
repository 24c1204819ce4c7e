"""
Async Redis Client Factory for the Assistant Microservices

Builds explicitly owned redis.asyncio clients; callers keep the instance and
pass it to whatever needs it, then close it on shutdown.

Configuration is read from environment variables:
- REDIS_URL: Connection string (default: redis://localhost:6379)
- REDIS_MAX_CONNECTIONS: Connection pool size (default: 50)
- REDIS_SOCKET_TIMEOUT: Socket timeout in seconds (default: 5.0)
- REDIS_SOCKET_CONNECT_TIMEOUT: Connect timeout in seconds (default: 5.0)
- REDIS_CONNECT_RETRIES: PING attempts before giving up (default: 3)

Usage:
    from shared.redis_client import RedisConfig, create_redis_client, close_redis_client

    client = await create_redis_client(RedisConfig.from_env())
    await client.rpush("key", "value")
    await close_redis_client(client)
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class RedisConfig:
    """Redis connection settings"""

    url: str = "redis://localhost:6379"
    max_connections: int = 50
    socket_timeout: float = 5.0
    socket_connect_timeout: float = 5.0
    connect_retries: int = 3

    def __post_init__(self):
        if self.max_connections <= 0:
            raise ValueError(f"max_connections must be positive, got {self.max_connections}")
        if self.connect_retries < 1:
            raise ValueError(f"connect_retries must be >= 1, got {self.connect_retries}")

    @staticmethod
    def from_env(default_url: str = "redis://localhost:6379") -> "RedisConfig":
        """Load configuration from environment variables"""
        try:
            max_connections = int(os.getenv("REDIS_MAX_CONNECTIONS", "50"))
        except ValueError:
            logger.warning("Invalid REDIS_MAX_CONNECTIONS, using default 50")
            max_connections = 50

        try:
            socket_timeout = float(os.getenv("REDIS_SOCKET_TIMEOUT", "5.0"))
            socket_connect_timeout = float(os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "5.0"))
        except ValueError:
            logger.warning("Invalid Redis socket timeout, using default 5.0")
            socket_timeout = socket_connect_timeout = 5.0

        try:
            connect_retries = int(os.getenv("REDIS_CONNECT_RETRIES", "3"))
        except ValueError:
            logger.warning("Invalid REDIS_CONNECT_RETRIES, using default 3")
            connect_retries = 3

        return RedisConfig(
            url=os.getenv("REDIS_URL", default_url),
            max_connections=max_connections,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
            connect_retries=connect_retries,
        )


async def create_redis_client(
    config: RedisConfig,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> redis.Redis:
    """
    Create a Redis client and verify it with PING.

    Retries the PING with exponential backoff (1s, 2s, 4s, ...).

    Raises:
        RedisConnectionError: If every PING attempt fails
    """
    pool = redis.ConnectionPool.from_url(
        config.url,
        max_connections=config.max_connections,
        socket_timeout=config.socket_timeout,
        socket_connect_timeout=config.socket_connect_timeout,
        decode_responses=True,
    )
    client = redis.Redis(connection_pool=pool)

    for attempt in range(config.connect_retries):
        try:
            await client.ping()
            logger.info("✅ Redis client connected successfully")
            return client
        except (RedisConnectionError, RedisTimeoutError) as e:
            if attempt < config.connect_retries - 1:
                delay = 2.0 ** attempt
                logger.warning(
                    f"Redis connection attempt {attempt + 1}/{config.connect_retries} failed: {e}. "
                    f"Retrying in {delay}s..."
                )
                await sleep(delay)
            else:
                logger.error(f"❌ Redis connection failed after {config.connect_retries} attempts: {e}")
                await close_redis_client(client)
                raise

    return client


async def ping_redis(client: redis.Redis) -> bool:
    """
    Test Redis connectivity with simple PING command.

    Returns:
        bool: True if PING successful, False otherwise
    """
    try:
        result = await client.ping()
        return result is True
    except Exception as e:
        logger.error(f"Redis PING failed: {e}")
        return False


async def get_redis_info(client: redis.Redis) -> Dict[str, Any]:
    """Get Redis server information for monitoring."""
    try:
        info = await client.info()
    except Exception as e:
        logger.error(f"Failed to get Redis info: {e}")
        return {"error": str(e)}

    return {
        "redis_version": info.get("redis_version", "unknown"),
        "uptime_seconds": info.get("uptime_in_seconds", 0),
        "connected_clients": info.get("connected_clients", 0),
        "used_memory_human": info.get("used_memory_human", "unknown"),
        "instantaneous_ops_per_sec": info.get("instantaneous_ops_per_sec", 0),
    }


async def close_redis_client(client: Optional[redis.Redis]) -> None:
    """Gracefully close a Redis client and its connection pool."""
    if client is None:
        return
    try:
        await client.aclose()
        await client.connection_pool.disconnect()
        logger.info("Redis client closed")
    except Exception as e:
        logger.error(f"Error closing Redis client: {e}")
