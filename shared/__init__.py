"""
Shared Utilities Module for the Assistant Microservices

Common utilities used across services:
- Redis client factory
- Health check utilities for Redis and completion backends
- Prometheus metrics

Usage:
    from shared import RedisConfig, create_redis_client, check_redis_health

    client = await create_redis_client(RedisConfig.from_env())
    health = await check_redis_health(client)
    print(f"Redis status: {health.status}")
"""

from .redis_client import (
    RedisConfig,
    create_redis_client,
    close_redis_client,
    ping_redis,
    get_redis_info,
)

from .health_check import (
    HealthCheckResult,
    check_redis_health,
    check_backends_health,
)

from .observability import (
    setup_metrics,
    get_metrics_response,
    record_classification,
    record_classification_error,
    record_backend_call,
    record_correction,
    set_index_size,
)

__all__ = [
    # Redis client utilities
    "RedisConfig",
    "create_redis_client",
    "close_redis_client",
    "ping_redis",
    "get_redis_info",
    # Health check utilities
    "HealthCheckResult",
    "check_redis_health",
    "check_backends_health",
    # Observability utilities
    "setup_metrics",
    "get_metrics_response",
    "record_classification",
    "record_classification_error",
    "record_backend_call",
    "record_correction",
    "set_index_size",
]
