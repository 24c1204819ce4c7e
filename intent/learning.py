"""
Correction / learning loop.

A user correction is folded back into the system in three steps:

1. A new exemplar is appended to the nearest-neighbor index synchronously,
   so the very next identical utterance is classified as corrected.
2. A prioritized retraining item is queued (priority boosted when the
   original prediction had very low confidence).
3. The correction and training item are persisted through the store. A
   persistence failure is logged and reported, never raised.
"""

import time
import heapq
import logging
import itertools
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .nearest_neighbor import NearestNeighborIndex
from .patterns import INTENTS
from .store import IntentStore

logger = logging.getLogger(__name__)

DEFAULT_TRAINING_PRIORITY = 5
BOOSTED_TRAINING_PRIORITY = 9
LOW_CONFIDENCE_THRESHOLD = 0.3
DEFAULT_TRAINING_QUEUE_SIZE = 1000


@dataclass(frozen=True)
class CorrectionRecord:
    original_text: str
    predicted_intent: str
    corrected_intent: str
    predicted_slots: Dict[str, Any] = field(default_factory=dict, hash=False)
    corrected_slots: Dict[str, Any] = field(default_factory=dict, hash=False)
    user_id: Optional[str] = None
    correction_type: str = "both"
    applied_immediately: bool = True
    predicted_confidence: Optional[float] = None
    created_at: float = field(default_factory=time.time)

    @staticmethod
    def classify_change(
        predicted_intent: str,
        corrected_intent: str,
        predicted_slots: Dict[str, Any],
        corrected_slots: Dict[str, Any],
    ) -> str:
        intent_changed = predicted_intent != corrected_intent
        slots_changed = bool(corrected_slots) and corrected_slots != predicted_slots
        if intent_changed and slots_changed:
            return "both"
        if slots_changed:
            return "slots"
        return "intent"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TrainingItem:
    text: str
    intent: str
    slots: Dict[str, Any] = field(default_factory=dict)
    priority: int = DEFAULT_TRAINING_PRIORITY
    source: str = "correction"
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if not 1 <= self.priority <= 10:
            raise ValueError(f"priority must be between 1 and 10, got {self.priority}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TrainingQueue:
    """
    Bounded max-priority queue of retraining items; FIFO among equal priorities.

    The queue mirrors the persisted ``training_queue`` list for the running
    process and is consumed with ``drain``. Once ``max_size`` items are held,
    each push evicts the oldest item of the lowest priority present.
    """

    def __init__(self, max_size: int = DEFAULT_TRAINING_QUEUE_SIZE):
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self.max_size = max_size
        self.dropped = 0
        self._heap: List[tuple] = []
        self._counter = itertools.count()

    def push(self, item: TrainingItem) -> None:
        heapq.heappush(self._heap, (-item.priority, next(self._counter), item))
        if len(self._heap) > self.max_size:
            victim = max(self._heap, key=lambda entry: (entry[0], -entry[1]))
            self._heap.remove(victim)
            heapq.heapify(self._heap)
            self.dropped += 1
            logger.debug(f"Training queue full, dropped '{victim[2].text[:50]}' (priority {victim[2].priority})")

    def drain(self, limit: Optional[int] = None) -> List[TrainingItem]:
        """Pop up to ``limit`` items (all when None) in priority order."""
        items: List[TrainingItem] = []
        while self._heap and (limit is None or len(items) < limit):
            items.append(heapq.heappop(self._heap)[2])
        return items

    def pop(self) -> Optional[TrainingItem]:
        if not self._heap:
            return None
        return heapq.heappop(self._heap)[2]

    def peek(self) -> Optional[TrainingItem]:
        return self._heap[0][2] if self._heap else None

    def snapshot(self) -> List[TrainingItem]:
        return [entry[2] for entry in sorted(self._heap)]

    def __len__(self) -> int:
        return len(self._heap)


@dataclass
class CorrectionResult:
    record: CorrectionRecord
    training_item: TrainingItem
    persisted: bool
    error: Optional[str] = None


class LearningLoop:
    """
    Apply user corrections to the in-memory index and the persistent log.

    Args:
        index: Nearest-neighbor index that receives corrected exemplars
        store: Persistence collaborator
        queue: Retraining queue (created when omitted)
    """

    def __init__(self, index: NearestNeighborIndex, store: IntentStore, queue: Optional[TrainingQueue] = None):
        self.index = index
        self.store = store
        self.queue = queue if queue is not None else TrainingQueue()
        self.corrections_applied = 0
        self.persistence_failures = 0

    async def apply_correction(
        self,
        text: str,
        predicted_intent: str,
        corrected_intent: str,
        predicted_slots: Optional[Dict[str, Any]] = None,
        corrected_slots: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        predicted_confidence: Optional[float] = None,
    ) -> CorrectionResult:
        if not text or not text.strip():
            raise ValueError("Correction text must not be empty")
        if not corrected_intent:
            raise ValueError("corrected_intent must not be empty")
        if corrected_intent not in INTENTS:
            raise ValueError(f"Unknown corrected intent {corrected_intent!r}; expected one of {INTENTS}")

        predicted_slots = dict(predicted_slots or {})
        corrected_slots = dict(corrected_slots or {})

        record = CorrectionRecord(
            original_text=text,
            predicted_intent=predicted_intent,
            corrected_intent=corrected_intent,
            predicted_slots=predicted_slots,
            corrected_slots=corrected_slots,
            user_id=user_id,
            correction_type=CorrectionRecord.classify_change(
                predicted_intent, corrected_intent, predicted_slots, corrected_slots
            ),
            applied_immediately=True,
            predicted_confidence=predicted_confidence,
        )

        # Read-your-write for the in-memory index happens before any await
        self.index.append(corrected_intent, text, corrected_slots, source="correction")

        low_confidence = predicted_confidence is not None and predicted_confidence < LOW_CONFIDENCE_THRESHOLD
        item = TrainingItem(
            text=text,
            intent=corrected_intent,
            slots=corrected_slots,
            priority=BOOSTED_TRAINING_PRIORITY if low_confidence else DEFAULT_TRAINING_PRIORITY,
        )
        self.queue.push(item)
        self.corrections_applied += 1

        logger.info(
            f"📝 Correction applied: '{text[:50]}' {predicted_intent} -> {corrected_intent} "
            f"({record.correction_type}, priority={item.priority})"
        )

        try:
            await self.store.log_correction(record.to_dict())
            await self.store.add_to_training_queue(item.to_dict())
        except Exception as e:
            # Persistence is non-critical; the in-memory index already learned
            self.persistence_failures += 1
            logger.error(f"❌ Failed to persist correction: {e}")
            return CorrectionResult(record, item, persisted=False, error=str(e))

        return CorrectionResult(record, item, persisted=self.store.enabled)

    async def seed_from_store(self, limit: Optional[int] = None) -> int:
        """Replay persisted corrections into the index at startup."""
        corrections = await self.store.load_corrections(limit)
        seeded = 0
        for entry in corrections:
            text = entry.get("original_text")
            intent = entry.get("corrected_intent")
            if not text or not intent:
                continue
            if intent not in INTENTS:
                logger.warning(f"Skipping persisted correction with unknown intent {intent!r}")
                continue
            self.index.append(intent, text, entry.get("corrected_slots") or {}, source="correction")
            seeded += 1
        if seeded:
            logger.info(f"🔁 Seeded {seeded} corrections into the nearest-neighbor index")
        return seeded

    def stats(self) -> Dict[str, Any]:
        return {
            "corrections_applied": self.corrections_applied,
            "persistence_failures": self.persistence_failures,
            "training_queue_size": len(self.queue),
            "training_queue_dropped": self.queue.dropped,
        }
