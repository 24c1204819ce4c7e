"""
Append-only prediction/correction log on Redis.

The store is the external persistence collaborator: it records predictions,
corrections, evaluation results and training-queue items as JSON entries in
capped Redis lists, and serves prior corrections back at startup. When no
Redis client is available the store is disabled: writes become no-ops and
reads return empty results.
"""

import json
import time
import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Dict, List, Optional, Set

import redis.asyncio as redis

logger = logging.getLogger(__name__)

KEY_PREFIX = "assistant:intent:"
PREDICTIONS_KEY = f"{KEY_PREFIX}predictions"
CORRECTIONS_KEY = f"{KEY_PREFIX}corrections"
EVAL_LOG_KEY = f"{KEY_PREFIX}eval_logs"
TRAINING_QUEUE_KEY = f"{KEY_PREFIX}training_queue"


class IntentStore:
    """
    Redis-backed log for intent predictions and user corrections.

    Args:
        client: redis.asyncio client, or None to run without persistence
        max_entries: Length cap applied to every list after each write
        clock: Wall-clock time source (epoch seconds)
    """

    def __init__(self, client: Optional[redis.Redis], max_entries: int = 10000, clock=time.time):
        self.client = client
        self.max_entries = max_entries
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def _append(self, key: str, entry: Dict[str, Any]) -> bool:
        if self.client is None:
            return False
        entry.setdefault("created_at", self._clock())
        await self.client.rpush(key, json.dumps(entry, default=str))
        await self.client.ltrim(key, -self.max_entries, -1)
        return True

    async def _read(self, key: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if self.client is None:
            return []
        start = -limit if limit else 0
        raw_entries = await self.client.lrange(key, start, -1)
        entries = []
        for raw in raw_entries:
            try:
                entries.append(json.loads(raw))
            except (TypeError, ValueError):
                logger.warning(f"Skipping unreadable entry in {key}")
        return entries

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def log_prediction(
        self,
        text: str,
        intent: str,
        confidence: float,
        slots: Dict[str, Any],
        source: str,
        needs_confirmation: bool,
        latency_ms: Optional[float] = None,
    ) -> bool:
        return await self._append(PREDICTIONS_KEY, {
            "text": text,
            "predicted_intent": intent,
            "confidence": confidence,
            "slots": slots,
            "source": source,
            "needs_confirmation": needs_confirmation,
            "latency_ms": latency_ms,
        })

    async def log_correction(self, correction: Dict[str, Any]) -> bool:
        return await self._append(CORRECTIONS_KEY, dict(correction))

    async def add_to_training_queue(self, item: Dict[str, Any]) -> bool:
        return await self._append(TRAINING_QUEUE_KEY, dict(item))

    async def log_classification(
        self,
        text: str,
        predicted_intent: str,
        expected_intent: str,
        confidence: float,
        source: str,
        latency_ms: Optional[float] = None,
    ) -> bool:
        """Record an evaluation-mode classification against its ground truth."""
        return await self._append(EVAL_LOG_KEY, {
            "text": text,
            "predicted_intent": predicted_intent,
            "expected_intent": expected_intent,
            "is_correct": predicted_intent == expected_intent,
            "confidence": confidence,
            "source": source,
            "latency_ms": latency_ms,
        })

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load_corrections(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self._read(CORRECTIONS_KEY, limit)

    async def get_accuracy_metrics(self, hours: float = 24) -> Dict[str, Any]:
        """
        Accuracy over a trailing window.

        ``overall_accuracy``/``per_intent`` come from evaluation logs;
        ``estimated_accuracy`` compares live predictions with the corrections
        users submitted in the same window.
        """
        cutoff = self._clock() - hours * 3600
        eval_logs = [e for e in await self._read(EVAL_LOG_KEY) if e.get("created_at", 0) >= cutoff]
        predictions = [e for e in await self._read(PREDICTIONS_KEY) if e.get("created_at", 0) >= cutoff]
        corrections = [e for e in await self._read(CORRECTIONS_KEY) if e.get("created_at", 0) >= cutoff]

        per_intent: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"total": 0, "correct": 0})
        correct = 0
        for entry in eval_logs:
            bucket = per_intent[entry.get("expected_intent", "unknown")]
            bucket["total"] += 1
            if entry.get("is_correct"):
                bucket["correct"] += 1
                correct += 1
        for bucket in per_intent.values():
            bucket["accuracy"] = bucket["correct"] / bucket["total"] if bucket["total"] else 0.0

        estimated = None
        if predictions:
            estimated = max(0.0, 1.0 - len(corrections) / len(predictions))

        return {
            "window_hours": hours,
            "total": len(eval_logs),
            "correct": correct,
            "overall_accuracy": correct / len(eval_logs) if eval_logs else None,
            "per_intent": dict(per_intent),
            "predictions": len(predictions),
            "corrections": len(corrections),
            "estimated_accuracy": estimated,
        }

    async def get_recent_failures(self, limit: int = 20) -> List[Dict[str, Any]]:
        failures = [e for e in await self._read(EVAL_LOG_KEY) if not e.get("is_correct")]
        return failures[-limit:][::-1]


class BackgroundWriter:
    """
    Fire-and-forget executor for persistence writes and late completion calls.

    Failures never reach the caller: they are logged and counted through the
    task done-callback. ``drain`` waits for everything still in flight.
    """

    def __init__(self, name: str = "intent-store"):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()
        self.submitted = 0
        self.failed = 0
        self.last_error: Optional[str] = None

    def submit(self, coro: Awaitable[Any], label: str = "write") -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self.submitted += 1
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, label))
        return task

    def _on_done(self, task: asyncio.Task, label: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug(f"{self.name}: {label} cancelled")
            return
        error = task.exception()
        if error is not None:
            self.failed += 1
            self.last_error = f"{label}: {error}"
            logger.error(f"❌ {self.name}: background {label} failed: {error}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        if not self._tasks:
            return
        pending = list(self._tasks)
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            logger.warning(f"⚠️ {self.name}: {len(not_done)} background writes still pending")

    def stats(self) -> Dict[str, Any]:
        return {
            "submitted": self.submitted,
            "failed": self.failed,
            "pending": self.pending,
            "last_error": self.last_error,
        }
