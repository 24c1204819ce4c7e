"""
Tests for the Redis-backed intent store and the background writer.
"""

import asyncio
import json

import pytest

from ..store import EVAL_LOG_KEY, PREDICTIONS_KEY, BackgroundWriter, IntentStore
from .conftest import make_fake_redis


class WallClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_disabled_store_is_a_no_op():
    store = IntentStore(None)
    assert store.enabled is False
    assert await store.log_prediction("hi", "none", 0.5, {}, "rule", True) is False
    assert await store.load_corrections() == []
    metrics = await store.get_accuracy_metrics()
    assert metrics["total"] == 0
    assert metrics["overall_accuracy"] is None


@pytest.mark.asyncio
async def test_log_prediction_appends_json(fake_redis):
    store = IntentStore(fake_redis, clock=WallClock())
    await store.log_prediction("check mail", "read_email", 0.9, {"email_label": "inbox"}, "nearest_neighbor", False, 3.2)

    entry = json.loads(fake_redis.lists[PREDICTIONS_KEY][0])
    assert entry["predicted_intent"] == "read_email"
    assert entry["slots"] == {"email_label": "inbox"}
    assert entry["created_at"] == 1_700_000_000.0
    assert entry["latency_ms"] == 3.2


@pytest.mark.asyncio
async def test_lists_are_capped(fake_redis):
    store = IntentStore(fake_redis, max_entries=3)
    for i in range(5):
        await store.log_prediction(f"text {i}", "none", 0.5, {}, "rule", True)

    texts = [json.loads(raw)["text"] for raw in fake_redis.lists[PREDICTIONS_KEY]]
    assert texts == ["text 2", "text 3", "text 4"]


@pytest.mark.asyncio
async def test_accuracy_metrics_over_window(fake_redis):
    clock = WallClock()
    store = IntentStore(fake_redis, clock=clock)

    clock.now -= 48 * 3600
    await store.log_classification("old", "none", "create_note", 0.5, "rule")
    clock.now += 48 * 3600

    await store.log_classification("a", "create_event", "create_event", 0.9, "nearest_neighbor")
    await store.log_classification("b", "create_event", "create_event", 0.9, "nearest_neighbor")
    await store.log_classification("c", "none", "add_reminder", 0.5, "rule")
    await store.log_prediction("a", "create_event", 0.9, {}, "nearest_neighbor", False)
    await store.log_prediction("c", "none", 0.5, {}, "rule", True)
    await store.log_correction({"original_text": "c", "corrected_intent": "add_reminder"})

    metrics = await store.get_accuracy_metrics(hours=24)

    assert metrics["total"] == 3
    assert metrics["correct"] == 2
    assert metrics["overall_accuracy"] == pytest.approx(2 / 3)
    assert metrics["per_intent"]["create_event"] == {"total": 2, "correct": 2, "accuracy": 1.0}
    assert metrics["per_intent"]["add_reminder"]["accuracy"] == 0.0
    assert metrics["predictions"] == 2
    assert metrics["corrections"] == 1
    assert metrics["estimated_accuracy"] == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_recent_failures_newest_first(fake_redis):
    store = IntentStore(fake_redis)
    await store.log_classification("a", "none", "create_note", 0.5, "rule")
    await store.log_classification("b", "create_note", "create_note", 0.9, "rule")
    await store.log_classification("c", "none", "read_email", 0.5, "rule")

    failures = await store.get_recent_failures()
    assert [f["text"] for f in failures] == ["c", "a"]


@pytest.mark.asyncio
async def test_unreadable_entries_are_skipped(fake_redis):
    store = IntentStore(fake_redis)
    fake_redis.lists[EVAL_LOG_KEY] = ["not json", json.dumps({"text": "ok", "is_correct": False})]
    assert [f["text"] for f in await store.get_recent_failures()] == ["ok"]


@pytest.mark.asyncio
async def test_load_corrections_limit():
    client = make_fake_redis()
    store = IntentStore(client)
    for i in range(4):
        await store.log_correction({"original_text": f"t{i}", "corrected_intent": "none"})

    recent = await store.load_corrections(limit=2)
    assert [c["original_text"] for c in recent] == ["t2", "t3"]


# ============================================================================
# BackgroundWriter
# ============================================================================

@pytest.mark.asyncio
async def test_background_writer_runs_and_drains():
    writer = BackgroundWriter(name="test")
    done = []

    async def write():
        await asyncio.sleep(0)
        done.append(True)

    writer.submit(write(), label="ok")
    assert writer.pending == 1
    await writer.drain(timeout=1.0)

    assert done == [True]
    assert writer.stats() == {"submitted": 1, "failed": 0, "pending": 0, "last_error": None}


@pytest.mark.asyncio
async def test_background_writer_absorbs_failures():
    writer = BackgroundWriter(name="test")

    async def boom():
        raise ConnectionError("redis down")

    writer.submit(boom(), label="prediction")
    await writer.drain(timeout=1.0)
    # Let the done-callback run
    await asyncio.sleep(0)

    assert writer.failed == 1
    assert writer.last_error == "prediction: redis down"
