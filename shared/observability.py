"""
Observability Module for the Assistant Microservices

Provides:
- Prometheus metrics for the classification cascade and completion backends
- Recording helpers so services never touch metric objects directly
"""

import logging
from typing import Optional

from prometheus_client import (
    Counter, Histogram, Gauge, Info,
    generate_latest, CONTENT_TYPE_LATEST, REGISTRY,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Prometheus Metrics Definitions
# =============================================================================

CLASSIFICATIONS_TOTAL = Counter(
    'assistant_intent_classifications_total',
    'Total number of classified utterances',
    ['source', 'intent']
)

CLASSIFICATION_ERRORS = Counter(
    'assistant_intent_classification_errors_total',
    'Classification stages that failed and were degraded',
    ['stage', 'error_type']
)

CLASSIFICATION_LATENCY = Histogram(
    'assistant_intent_classification_latency_seconds',
    'End-to-end classification latency',
    ['source'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

BACKEND_CALLS = Counter(
    'assistant_completion_backend_calls_total',
    'Completion backend calls by outcome',
    ['backend', 'outcome']
)

BACKEND_LATENCY = Histogram(
    'assistant_completion_backend_latency_seconds',
    'Completion backend call latency including retries',
    ['backend'],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0)
)

CORRECTIONS_TOTAL = Counter(
    'assistant_intent_corrections_total',
    'User corrections applied',
    ['correction_type', 'persisted']
)

INDEX_SIZE = Gauge(
    'assistant_intent_index_exemplars',
    'Exemplars held by the nearest-neighbor index'
)

SERVICE_INFO = Info(
    'assistant_service',
    'Service information'
)

_metrics_initialized = False


def setup_metrics(service_name: str, service_version: str = "1.0.0") -> None:
    """Publish static service information once per process."""
    global _metrics_initialized
    if _metrics_initialized:
        return
    SERVICE_INFO.info({'service': service_name, 'version': service_version})
    _metrics_initialized = True
    logger.info(f"✅ Prometheus metrics initialized for {service_name}")


def get_metrics_response():
    """
    Get Prometheus metrics as HTTP response content.

    Returns:
        Tuple of (content_bytes, content_type) for HTTP response
    """
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST


# =============================================================================
# Metric Recording Utilities
# =============================================================================

def record_classification(source: str, intent: str, duration_seconds: Optional[float] = None):
    CLASSIFICATIONS_TOTAL.labels(source=source, intent=intent).inc()
    if duration_seconds is not None:
        CLASSIFICATION_LATENCY.labels(source=source).observe(duration_seconds)


def record_classification_error(stage: str, error: BaseException):
    CLASSIFICATION_ERRORS.labels(stage=stage, error_type=type(error).__name__).inc()


def record_backend_call(backend: str, outcome: str, duration_seconds: Optional[float] = None):
    BACKEND_CALLS.labels(backend=backend, outcome=outcome).inc()
    if duration_seconds is not None:
        BACKEND_LATENCY.labels(backend=backend).observe(duration_seconds)


def record_correction(correction_type: str, persisted: bool):
    CORRECTIONS_TOTAL.labels(correction_type=correction_type, persisted=str(persisted).lower()).inc()


def set_index_size(size: int):
    INDEX_SIZE.set(size)
