"""
Service runtime wiring.

Builds the explicitly owned object graph of the intent service (router,
index, slot extractor, store, learning loop, classifier) from an
IntentConfig. The FastAPI lifespan and the tests both go through
``build_runtime``; nothing here is a module-level singleton.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from shared.observability import set_index_size

from .cache import BoundedCache
from .completion_router import CompletionRouter
from .config import IntentConfig
from .intent_classifier import IntentClassifier
from .learning import LearningLoop
from .nearest_neighbor import NearestNeighborIndex
from .slot_extractor import SlotExtractor
from .store import BackgroundWriter, IntentStore
from .temporal import TemporalParser

logger = logging.getLogger(__name__)


@dataclass
class ServiceRuntime:
    config: IntentConfig
    router: CompletionRouter
    index: NearestNeighborIndex
    store: IntentStore
    learning: LearningLoop
    slot_extractor: SlotExtractor
    classifier: IntentClassifier
    writer: BackgroundWriter
    redis_client: Optional[Any] = None
    started_at: float = 0.0

    async def aclose(self, drain_timeout: float = 5.0) -> None:
        """Flush pending background writes and release the router's HTTP client."""
        await self.writer.drain(timeout=drain_timeout)
        await self.router.aclose()
        logger.info("🛑 Intent runtime closed")


async def build_runtime(
    config: IntentConfig,
    redis_client: Optional[Any] = None,
    router: Optional[CompletionRouter] = None,
    temporal_parser: Optional[TemporalParser] = None,
    clock: Callable[[], float] = time.monotonic,
) -> ServiceRuntime:
    """
    Wire the service from configuration.

    Args:
        config: Service configuration
        redis_client: Connected redis.asyncio client, or None to disable persistence
        router: Pre-built completion router (tests inject one with fake backends)
        temporal_parser: Temporal parser (tests inject a fixed clock)
        clock: Monotonic clock shared by the caches and backends

    Returns:
        ServiceRuntime with the index seeded from the bundled dataset and
        from previously persisted corrections
    """
    router = router or CompletionRouter.from_config(config, clock=clock)

    index = NearestNeighborIndex()
    if config.training_data_path:
        try:
            index.load_dataset(config.training_data_path)
        except (OSError, ValueError) as e:
            logger.warning(f"⚠️ Could not load training data from {config.training_data_path}: {e}")

    store = IntentStore(redis_client, max_entries=config.store_max_entries)
    learning = LearningLoop(index, store)
    try:
        await learning.seed_from_store()
    except Exception as e:
        logger.warning(f"⚠️ Could not replay persisted corrections: {e}")
    set_index_size(index.size)

    writer = BackgroundWriter(name="intent-store")
    slot_extractor = SlotExtractor(
        router=router,
        temporal_parser=temporal_parser,
        refinement_timeout=config.slot_refinement_timeout,
        ambiguity_threshold=config.slot_ambiguity_threshold,
        writer=writer,
    )
    classifier = IntentClassifier(
        config=config,
        index=index,
        slot_extractor=slot_extractor,
        learning=learning,
        store=store,
        router=router,
        writer=writer,
        cache=BoundedCache(
            config.cache_max_size,
            config.cache_ttl_seconds,
            name="classification-cache",
            clock=clock,
        ),
    )

    return ServiceRuntime(
        config=config,
        router=router,
        index=index,
        store=store,
        learning=learning,
        slot_extractor=slot_extractor,
        classifier=classifier,
        writer=writer,
        redis_client=redis_client,
        started_at=time.time(),
    )
