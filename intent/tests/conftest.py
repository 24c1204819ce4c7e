"""
Pytest fixtures for intent service tests.

Provides a controllable clock, scripted completion backends, a dict-backed
Redis mock and pre-wired service components.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock

import pytest

from ..backends import Backend, CompletionRequest
from ..cache import BoundedCache
from ..completion_router import CompletionRouter
from ..config import BackendSettings, IntentConfig
from ..intent_classifier import IntentClassifier
from ..learning import LearningLoop
from ..nearest_neighbor import NearestNeighborIndex
from ..retry import RetryPolicy
from ..slot_extractor import SlotExtractor
from ..store import BackgroundWriter, IntentStore
from ..temporal import TemporalParser

# Monday
FIXED_NOW = datetime(2026, 10, 19, 9, 0, 0)


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend(Backend):
    """
    Backend that replays a script of outcomes.

    Each script item is a content string, a (content, tokens) tuple or an
    exception instance to raise. The last item repeats once the script runs out.
    """

    def __init__(
        self,
        name: str,
        script: Optional[List[Any]] = None,
        priority: int = 1,
        clock=None,
        delay: float = 0.0,
        requests_per_minute: int = 60,
    ):
        settings = BackendSettings(
            name=name,
            api_key="test-key",
            model=f"{name}-model",
            endpoint="http://fake.local",
            priority=priority,
            requests_per_minute=requests_per_minute,
        )
        super().__init__(settings, clock or FakeClock())
        self.script = list(script or ['{"intent": "none", "confidence": 0.5, "slots": {}}'])
        self.delay = delay
        self.requests: List[CompletionRequest] = []

    async def _invoke(self, request: CompletionRequest) -> Tuple[str, int]:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, tuple):
            return outcome
        return outcome, 10

    @property
    def calls(self) -> int:
        return len(self.requests)


def _normalize_range(length: int, start: int, end: int) -> Tuple[int, int]:
    start = start if start >= 0 else max(0, length + start)
    end = end if end >= 0 else length + end
    return start, end


def make_fake_redis() -> AsyncMock:
    """AsyncMock Redis whose list commands operate on an in-memory dict."""
    lists: Dict[str, List[str]] = {}
    client = AsyncMock()

    async def rpush(key, *values):
        lists.setdefault(key, []).extend(values)
        return len(lists[key])

    async def ltrim(key, start, end):
        items = lists.get(key, [])
        s, e = _normalize_range(len(items), start, end)
        lists[key] = items[s:e + 1]
        return True

    async def lrange(key, start, end):
        items = lists.get(key, [])
        s, e = _normalize_range(len(items), start, end)
        return list(items[s:e + 1])

    client.rpush = AsyncMock(side_effect=rpush)
    client.ltrim = AsyncMock(side_effect=ltrim)
    client.lrange = AsyncMock(side_effect=lrange)
    client.ping = AsyncMock(return_value=True)
    client.info = AsyncMock(return_value={
        "redis_version": "7.2.0",
        "connected_clients": 1,
        "used_memory_human": "1M",
    })
    client.lists = lists
    return client


async def no_sleep(seconds: float) -> None:
    return None


def build_router(backends: List[Backend], clock: Optional[FakeClock] = None, **kwargs) -> CompletionRouter:
    """Router with instant retries and a fake-clock cache."""
    kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, base_delay=0.1, max_delay=1.0, jitter=False))
    kwargs.setdefault("cache", BoundedCache(100, 3600.0, name="test-completion-cache", clock=clock or FakeClock()))
    kwargs.setdefault("sleep", no_sleep)
    return CompletionRouter(backends, **kwargs)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return make_fake_redis()


@pytest.fixture
def temporal_parser():
    return TemporalParser(clock=lambda: FIXED_NOW)


@pytest.fixture
def test_config():
    """Configuration with no real backends, no bundled dataset and a short race timeout."""
    return IntentConfig(
        backends=[],
        classification_timeout=0.2,
        slot_refinement_timeout=0.2,
        training_data_path=None,
        log_classifications=False,
    )


@pytest.fixture
def seeded_index():
    index = NearestNeighborIndex()
    for intent, text in [
        ("create_event", "schedule a meeting with the design team"),
        ("create_event", "book a call with sarah on friday"),
        ("create_event", "set up a lunch next tuesday"),
        ("add_reminder", "remind me to call mom"),
        ("add_reminder", "set a reminder to take my medication"),
        ("create_note", "take a note that the wifi password changed"),
        ("create_note", "jot down milk eggs and bread"),
        ("read_email", "check my email"),
        ("read_email", "show me unread emails"),
        ("send_email", "send an email to alex about the budget"),
        ("send_email", "draft an email to the landlord"),
    ]:
        index.append(intent, text, source="dataset")
    return index


def build_classifier(
    config: IntentConfig,
    index: NearestNeighborIndex,
    router: Optional[CompletionRouter] = None,
    redis_client: Optional[Any] = None,
    temporal_parser: Optional[TemporalParser] = None,
    clock: Optional[FakeClock] = None,
) -> IntentClassifier:
    store = IntentStore(redis_client)
    return IntentClassifier(
        config=config,
        index=index,
        slot_extractor=SlotExtractor(
            router=router,
            temporal_parser=temporal_parser or TemporalParser(clock=lambda: FIXED_NOW),
            refinement_timeout=config.slot_refinement_timeout,
            ambiguity_threshold=config.slot_ambiguity_threshold,
        ),
        learning=LearningLoop(index, store),
        store=store,
        router=router,
        writer=BackgroundWriter(name="test-writer"),
        cache=BoundedCache(config.cache_max_size, config.cache_ttl_seconds, clock=clock or FakeClock()),
    )
