"""
Intent Classification Microservice

Cascading intent classification (cache → nearest neighbor → completion →
rules) with slot extraction, a correction learning loop and a resilient
multi-backend completion router, served over an HTTP REST API.

Main Entry Point:
    app.py - FastAPI application with POST /api/v1/classify endpoint

Components:
    - IntentClassifier: Cascade orchestration
    - CompletionRouter: Prioritized completion backends with retry and circuit breaking
    - NearestNeighborIndex: Similarity vote over labeled exemplars
    - SlotExtractor: Temporal, entity and intent-specific slot filling
    - LearningLoop: Applies user corrections to the index and persistence log
    - IntentConfig: Configuration dataclass with environment variable loading
"""

from .config import IntentConfig
from .completion_router import CompletionRouter
from .intent_classifier import IntentClassifier, InvalidInputError
from .learning import LearningLoop
from .nearest_neighbor import NearestNeighborIndex
from .runtime import ServiceRuntime, build_runtime
from .slot_extractor import SlotExtractor

__all__ = [
    "IntentConfig",
    "CompletionRouter",
    "IntentClassifier",
    "InvalidInputError",
    "LearningLoop",
    "NearestNeighborIndex",
    "ServiceRuntime",
    "build_runtime",
    "SlotExtractor",
]
