"""
Intent Classification Core Logic - Cascading Architecture

Turns a free-text utterance into a structured {intent, confidence, slots}
result through a cascade of increasingly expensive strategies:

- Cache: exact repeat of a recent utterance (skipped in evaluation mode)
- Nearest neighbor: similarity vote over stored exemplars; accepted above
  the acceptance threshold
- Completion: a completion-router call raced against a short timeout
- Degraded: the sub-threshold nearest-neighbor candidate (flagged for
  confirmation) or, failing that, the deterministic rule-based floor

Classification never hard-fails once the input is valid: every failure below
the final catch-all degrades the response instead of propagating.
"""

import json
import math
import time
import asyncio
import hashlib
import logging
from dataclasses import replace
from typing import Any, Dict, Optional, Tuple

from shared.observability import (
    record_classification,
    record_classification_error,
    record_correction,
    set_index_size,
)

from .backends import CompletionRequest, CompletionResponse
from .cache import BoundedCache
from .completion_router import CompletionRouter, CompletionRouterError
from .config import IntentConfig
from .learning import CorrectionResult, LearningLoop
from .models import ClassificationResult, ClassificationSource
from .nearest_neighbor import NearestNeighborIndex, NearestNeighborMatch, normalize
from .parsing import extract_json_object
from .patterns import INTENTS, NONE_INTENT, get_classification_prompt, get_system_prompt
from .rule_classifier import RuleBasedClassifier
from .slot_extractor import SlotExtractor
from .store import BackgroundWriter, IntentStore

logger = logging.getLogger(__name__)

# Applied to a sub-threshold nearest-neighbor candidate used as a fallback
DEGRADED_CONFIDENCE_FACTOR = 0.75
DEFAULT_COMPLETION_CONFIDENCE = 0.5


class InvalidInputError(ValueError):
    """Raised for input that must not enter the cascade (e.g. empty text)."""


class IntentClassifier:
    """
    Cascading intent classifier.

    All collaborators are injected; ``build_runtime`` in ``intent.runtime``
    wires the production set from an ``IntentConfig``.

    Args:
        config: Thresholds, timeouts and cache sizing
        index: Nearest-neighbor exemplar index
        slot_extractor: Slot extraction pipeline
        learning: Correction loop sharing ``index``
        store: Persistence log (may be disabled)
        router: Completion router, or None to run without completion backends
        writer: Fire-and-forget executor for persistence writes and late completions
        cache: Classification result cache
    """

    def __init__(
        self,
        config: IntentConfig,
        index: NearestNeighborIndex,
        slot_extractor: SlotExtractor,
        learning: LearningLoop,
        store: IntentStore,
        router: Optional[CompletionRouter] = None,
        writer: Optional[BackgroundWriter] = None,
        cache: Optional[BoundedCache[ClassificationResult]] = None,
        rule_classifier: Optional[RuleBasedClassifier] = None,
    ):
        self.config = config
        self.index = index
        self.slot_extractor = slot_extractor
        self.learning = learning
        self.store = store
        self.router = router
        self.writer = writer or BackgroundWriter()
        self.cache = cache if cache is not None else BoundedCache(
            config.cache_max_size, config.cache_ttl_seconds, name="classification-cache"
        )
        self.rule_classifier = rule_classifier or RuleBasedClassifier()

        # Performance tracking
        self.source_counts: Dict[str, int] = {s.value: 0 for s in ClassificationSource}
        self.degraded_count = 0
        self.completion_failures = 0
        self.total_latency_ms = 0.0
        self.total_confidence = 0.0

        logger.info(
            f"✅ IntentClassifier initialized: knn_threshold={config.knn_acceptance_threshold}, "
            f"race_timeout={config.classification_timeout}s, index_size={index.size}, "
            f"backends={[b.name for b in router.backends] if router else []}"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def classify_intent(
        self,
        text: str,
        context: Optional[Dict[str, Any]] = None,
        expected_intent: Optional[str] = None,
    ) -> ClassificationResult:
        """
        Classify an utterance.

        Args:
            text: User utterance (non-empty)
            context: Optional conversation context forwarded to the completion call
            expected_intent: Ground-truth label; enables evaluation mode

        Returns:
            ClassificationResult

        Raises:
            InvalidInputError: If the text is empty or blank
        """
        if text is None or not text.strip():
            raise InvalidInputError("Text must not be empty")

        start_time = time.perf_counter()
        evaluation_mode = expected_intent is not None
        cache_key = self._cache_key(text)

        if not evaluation_mode:
            cached = self.cache.get(cache_key)
            if cached is not None:
                result = replace(
                    cached,
                    source=ClassificationSource.CACHE,
                    slots=dict(cached.slots),
                    metadata={**cached.metadata, "cache_hit": True, "cached_source": cached.source.value},
                )
                return self._finish(text, result, start_time, expected_intent, persist=False)

        try:
            result, cacheable = await self._run_cascade(text, context)
        except Exception as e:
            logger.error(f"❌ Classification cascade failed, using rule-based floor: {e}", exc_info=True)
            record_classification_error("cascade", e)
            result = await self._rule_fallback(text)
            cacheable = False

        if cacheable:
            self.cache.set(cache_key, result)

        return self._finish(text, result, start_time, expected_intent, persist=True)

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
        """Fold a user correction back into the index and drop the stale cached result."""
        outcome = await self.learning.apply_correction(
            text,
            predicted_intent,
            corrected_intent,
            predicted_slots=predicted_slots,
            corrected_slots=corrected_slots,
            user_id=user_id,
            predicted_confidence=predicted_confidence,
        )
        self.cache.invalidate(self._cache_key(text))
        record_correction(outcome.record.correction_type, outcome.persisted)
        set_index_size(self.index.size)
        return outcome

    def clear_cache(self) -> int:
        return self.cache.clear()

    # ------------------------------------------------------------------
    # Cascade
    # ------------------------------------------------------------------

    async def _run_cascade(
        self, text: str, context: Optional[Dict[str, Any]]
    ) -> Tuple[ClassificationResult, bool]:
        """Return (result, cacheable); degraded results are not cached."""
        candidate = self._nearest_neighbor(text)
        if candidate is not None and candidate.confidence > self.config.knn_acceptance_threshold:
            slots = await self.slot_extractor.extract_slots(
                text, candidate.intent, candidate.confidence, seed=candidate.slots
            )
            result = self._build(
                candidate.intent,
                candidate.confidence,
                slots,
                ClassificationSource.NEAREST_NEIGHBOR,
                metadata={"exact_match": candidate.exact, "neighbors": candidate.neighbors},
            )
            return result, True

        completion = await self._race_completion(text, context)
        if completion is not None:
            intent, confidence, hints, response = completion
            slots = await self.slot_extractor.extract_slots(text, intent, confidence, hints=hints)
            result = self._build(
                intent,
                confidence,
                slots,
                ClassificationSource.COMPLETION,
                llm_fallback=True,
                metadata={
                    "backend": response.backend_name,
                    "model": response.model_name,
                    "completion_cached": response.cached,
                },
            )
            return result, True

        return await self._degrade(text, candidate), False

    def _nearest_neighbor(self, text: str) -> Optional[NearestNeighborMatch]:
        try:
            return self.index.classify(text)
        except Exception as e:
            logger.warning(f"⚠️ Nearest-neighbor stage failed: {e}")
            record_classification_error("nearest_neighbor", e)
            return None

    async def _race_completion(
        self, text: str, context: Optional[Dict[str, Any]]
    ) -> Optional[Tuple[str, float, Dict[str, Any], CompletionResponse]]:
        if self.router is None or not self.router.backends:
            return None

        # Losing the race stops the wait, not the router call
        task = asyncio.ensure_future(self._completion_classify(text, context))
        try:
            return await asyncio.wait_for(
                asyncio.shield(task),
                timeout=self.config.classification_timeout,
            )
        except asyncio.TimeoutError as e:
            self.completion_failures += 1
            record_classification_error("completion", e)
            logger.warning(
                f"⏱️ Completion classification exceeded {self.config.classification_timeout}s, degrading"
            )
            self.writer.submit(self._settle_completion(task), label="completion")
        except (CompletionRouterError, ValueError) as e:
            self.completion_failures += 1
            record_classification_error("completion", e)
            logger.warning(f"⚠️ Completion classification failed, degrading: {e}")
        return None

    async def _settle_completion(self, task: "asyncio.Future") -> None:
        """Wait out a completion call that lost the race."""
        try:
            _, _, _, response = await task
        except (CompletionRouterError, ValueError) as e:
            logger.info(f"Late completion classification failed: {e}")
            return
        logger.info(f"Late completion from {response.backend_name} cached for the next request")

    async def _completion_classify(
        self, text: str, context: Optional[Dict[str, Any]]
    ) -> Tuple[str, float, Dict[str, Any], CompletionResponse]:
        prompt = get_classification_prompt(text)
        if context:
            prompt = f"{prompt}\nContext: {json.dumps(context, default=str)}"

        response = await self.router.complete(
            CompletionRequest(
                prompt=prompt,
                system_prompt=get_system_prompt(),
                temperature=0.1,
                max_tokens=200,
                response_format="json",
                complexity="low",
            )
        )
        payload = extract_json_object(response.content)

        intent = str(payload.get("intent") or "").strip().lower()
        if intent not in INTENTS:
            logger.warning(f"Completion returned unknown intent {intent!r}, mapping to '{NONE_INTENT}'")
            intent = NONE_INTENT

        slots = payload.get("slots")
        hints = slots if isinstance(slots, dict) else {}
        return intent, self._coerce_confidence(payload.get("confidence")), hints, response

    async def _degrade(
        self, text: str, candidate: Optional[NearestNeighborMatch]
    ) -> ClassificationResult:
        self.degraded_count += 1
        if candidate is None:
            return await self._rule_fallback(text)

        # Always lands below the confirmation threshold
        confidence = min(
            candidate.confidence * DEGRADED_CONFIDENCE_FACTOR,
            max(0.0, self.config.confirmation_threshold - 0.01),
        )
        slots = await self.slot_extractor.extract_slots(
            text, candidate.intent, confidence, seed=candidate.slots, allow_refinement=False
        )
        return self._build(
            candidate.intent,
            confidence,
            slots,
            ClassificationSource.NEAREST_NEIGHBOR,
            metadata={"degraded": True, "neighbors": candidate.neighbors},
        )

    async def _rule_fallback(self, text: str) -> ClassificationResult:
        rule = self.rule_classifier.classify(text)
        try:
            slots = await self.slot_extractor.extract_slots(
                text, rule["intent"], rule["confidence"], allow_refinement=False
            )
        except Exception as e:
            logger.error(f"❌ Slot extraction failed on rule fallback: {e}")
            record_classification_error("slots", e)
            slots = {}
        return self._build(
            rule["intent"],
            rule["confidence"],
            slots,
            ClassificationSource.RULE,
            metadata={"degraded": True},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _cache_key(text: str) -> str:
        return hashlib.sha256(normalize(text).encode("utf-8")).hexdigest()[:32]

    @staticmethod
    def _coerce_confidence(value: Any) -> float:
        try:
            confidence = float(value)
        except (TypeError, ValueError):
            return DEFAULT_COMPLETION_CONFIDENCE
        if math.isnan(confidence):
            return DEFAULT_COMPLETION_CONFIDENCE
        return min(1.0, max(0.0, confidence))

    def _build(
        self,
        intent: str,
        confidence: float,
        slots: Dict[str, Any],
        source: ClassificationSource,
        llm_fallback: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ClassificationResult:
        confidence = min(1.0, max(0.0, float(confidence)))
        return ClassificationResult(
            intent=intent,
            confidence=confidence,
            slots=slots,
            source=source,
            needs_confirmation=confidence < self.config.confirmation_threshold,
            llm_fallback=llm_fallback,
            metadata={"cache_hit": False, **(metadata or {})},
        )

    def _finish(
        self,
        text: str,
        result: ClassificationResult,
        start_time: float,
        expected_intent: Optional[str],
        persist: bool,
    ) -> ClassificationResult:
        latency_ms = (time.perf_counter() - start_time) * 1000
        result.metadata["latency_ms"] = round(latency_ms, 2)

        self.source_counts[result.source.value] += 1
        self.total_latency_ms += latency_ms
        self.total_confidence += result.confidence
        record_classification(result.source.value, result.intent, latency_ms / 1000)

        if self.config.log_classifications:
            logger.info(
                f"🎯 '{text[:50]}' → {result.intent} ({result.confidence:.2f}, "
                f"{result.source.value}, {latency_ms:.0f}ms)"
            )

        if persist and self.store.enabled:
            self.writer.submit(
                self.store.log_prediction(
                    text,
                    result.intent,
                    result.confidence,
                    result.slots,
                    result.source.value,
                    result.needs_confirmation,
                    latency_ms=round(latency_ms, 2),
                ),
                label="prediction",
            )
        if expected_intent is not None and self.store.enabled:
            self.writer.submit(
                self.store.log_classification(
                    text,
                    result.intent,
                    expected_intent,
                    result.confidence,
                    result.source.value,
                    latency_ms=round(latency_ms, 2),
                ),
                label="evaluation",
            )
        return result

    def get_performance_stats(self) -> Dict[str, Any]:
        """
        Get classification performance statistics.

        Returns:
            Dictionary with per-source counts, latency, confidence, cache,
            index and background-writer metrics
        """
        total_requests = sum(self.source_counts.values())
        return {
            "total_requests": total_requests,
            "source_counts": dict(self.source_counts),
            "source_percentages": {
                source: round(count / total_requests * 100, 2) if total_requests else 0.0
                for source, count in self.source_counts.items()
            },
            "degraded_count": self.degraded_count,
            "completion_failures": self.completion_failures,
            "average_latency_ms": round(self.total_latency_ms / total_requests, 2) if total_requests else 0.0,
            "average_confidence": round(self.total_confidence / total_requests, 3) if total_requests else 0.0,
            "cache": self.cache.stats().to_dict(),
            "index_size": self.index.size,
            "slot_refinements": {
                "attempted": self.slot_extractor.refinements_attempted,
                "failed": self.slot_extractor.refinements_failed,
            },
            "learning": self.learning.stats(),
            "background_writes": self.writer.stats(),
        }
