"""
Health Check Utilities for the Assistant Microservices

Provides reusable health check functions for validating:
- Redis connectivity and performance
- Completion backend availability

All health checks return HealthCheckResult with standardized status codes:
- "healthy": Service is fully operational
- "degraded": Service is running but with issues
- "unhealthy": Service is not functional
"""

import time
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from .redis_client import get_redis_info, ping_redis

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckResult:
    """
    Standardized health check result.

    Attributes:
        service_name: Name of the component being checked
        status: "healthy", "unhealthy", or "degraded"
        latency_ms: Check duration in milliseconds
        details: Additional information (error messages, metrics, etc.)
        timestamp: Unix timestamp when check was performed
    """
    service_name: str
    status: str
    latency_ms: float
    details: Dict[str, Any]
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return asdict(self)

    def is_healthy(self) -> bool:
        """Check if service is healthy"""
        return self.status == "healthy"


async def check_redis_health(redis_client: Optional[Any]) -> HealthCheckResult:
    """
    Check Redis connectivity and performance.

    A missing client is reported as "degraded": the service keeps classifying
    without its persistence log.
    """
    start_time = time.time()

    if redis_client is None:
        return HealthCheckResult(
            service_name="redis",
            status="degraded",
            latency_ms=0.0,
            details={"error": "Redis not configured; persistence disabled"},
            timestamp=time.time(),
        )

    if not await ping_redis(redis_client):
        return HealthCheckResult(
            service_name="redis",
            status="unhealthy",
            latency_ms=(time.time() - start_time) * 1000,
            details={"error": "PING command failed"},
            timestamp=time.time(),
        )

    info = await get_redis_info(redis_client)
    return HealthCheckResult(
        service_name="redis",
        status="degraded" if "error" in info else "healthy",
        latency_ms=(time.time() - start_time) * 1000,
        details={
            "version": info.get("redis_version", "unknown"),
            "connected_clients": info.get("connected_clients", 0),
            "used_memory": info.get("used_memory_human", "unknown"),
        },
        timestamp=time.time(),
    )


def check_backends_health(router: Any) -> HealthCheckResult:
    """
    Summarize completion backend availability from a router.

    healthy: every registered backend is healthy
    degraded: some backends are down, or none are registered
    unhealthy: backends are registered but none is healthy
    """
    start_time = time.time()
    registered = [b.name for b in router.backends]
    healthy = router.healthy_backends()

    if not registered:
        status = "degraded"
    elif not healthy:
        status = "unhealthy"
    elif len(healthy) < len(registered):
        status = "degraded"
    else:
        status = "healthy"

    return HealthCheckResult(
        service_name="completion_backends",
        status=status,
        latency_ms=(time.time() - start_time) * 1000,
        details={"registered": registered, "healthy": healthy},
        timestamp=time.time(),
    )
