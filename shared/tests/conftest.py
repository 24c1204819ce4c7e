"""
Pytest fixtures for shared module tests.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock


@pytest.fixture
def mock_redis_client():
    """Create a mock Redis client."""
    client = AsyncMock()

    # Mock common methods
    client.ping = AsyncMock(return_value=True)
    client.info = AsyncMock(return_value={
        "redis_version": "7.2.4",
        "uptime_in_seconds": 3600,
        "connected_clients": 3,
        "used_memory_human": "2.5M",
        "instantaneous_ops_per_sec": 12,
    })
    client.aclose = AsyncMock(return_value=None)
    client.connection_pool = MagicMock()
    client.connection_pool.disconnect = AsyncMock(return_value=None)

    return client

