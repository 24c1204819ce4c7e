"""
Nearest-neighbor intent index.

Holds (text, slots) exemplars per intent and classifies new utterances by
similarity-weighted voting over the closest exemplars. Exemplars come from the
bulk labeled dataset at startup and from user corrections at runtime; they are
never removed in-process.
"""

import re
import json
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .patterns import INTENTS, NONE_INTENT, get_intent_keywords, load_intent_patterns

logger = logging.getLogger(__name__)

SIMILARITY_FLOOR = 0.5
TOP_K = 5
MAX_NON_EXACT_CONFIDENCE = 0.95
POSITION_BONUS = 0.1
KEYWORD_BONUS = 0.5

_TOKEN_PATTERN = re.compile(r"[a-z0-9@#':.]+")


def normalize(text: str) -> str:
    return " ".join((text or "").lower().split())


def tokenize(normalized: str) -> List[str]:
    return [t.strip(".:'") for t in _TOKEN_PATTERN.findall(normalized) if t.strip(".:'")]


@dataclass(frozen=True)
class Exemplar:
    intent: str
    text: str
    normalized: str
    tokens: Tuple[str, ...]
    slots: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    keyword_intents: FrozenSet[str] = frozenset()
    source: str = "dataset"


@dataclass
class NearestNeighborMatch:
    intent: str
    confidence: float
    slots: Dict[str, Any]
    exact: bool = False
    neighbors: int = 0
    nearest_text: Optional[str] = None


class NearestNeighborIndex:
    """
    In-memory exemplar index with similarity voting.

    Writes (``append``) are serialized by a lock; ``classify`` works on a
    snapshot, so a concurrent correction may not affect a classification that
    already took its snapshot.
    """

    def __init__(self, intent_keywords: Optional[Dict[str, List[str]]] = None):
        self.intent_keywords = intent_keywords or get_intent_keywords(load_intent_patterns())
        self._keyword_patterns = {
            intent: [re.compile(rf"\b{re.escape(kw)}\b") for kw in keywords]
            for intent, keywords in self.intent_keywords.items()
        }
        self._lock = threading.Lock()
        self._exemplars: List[Exemplar] = []
        self._exact: Dict[str, Exemplar] = {}

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append(self, intent: str, text: str, slots: Optional[Dict[str, Any]] = None, source: str = "correction") -> Exemplar:
        normalized = normalize(text)
        if not normalized:
            raise ValueError("Cannot index an empty utterance")

        exemplar = Exemplar(
            intent=intent,
            text=text,
            normalized=normalized,
            tokens=tuple(tokenize(normalized)),
            slots=dict(slots or {}),
            keyword_intents=self._keyword_intents(normalized),
            source=source,
        )
        with self._lock:
            self._exemplars.append(exemplar)
            # Latest exemplar wins for exact lookups
            self._exact[normalized] = exemplar
        return exemplar

    def load_dataset(self, path: str) -> int:
        """
        Seed exemplars from a JSON dataset.

        Accepts either a list of ``{"text", "intent", "slots"?}`` records or an
        object with an ``examples`` list of such records.

        Raises:
            OSError: If the file cannot be read
            ValueError: If the file is not valid JSON or has the wrong shape
        """
        with Path(path).open("r", encoding="utf-8") as f:
            data = json.load(f)

        records = data.get("examples") if isinstance(data, dict) else data
        if not isinstance(records, list):
            raise ValueError(f"Training dataset {path} must contain a list of examples")

        loaded = 0
        for record in records:
            text = record.get("text") if isinstance(record, dict) else None
            intent = record.get("intent") if isinstance(record, dict) else None
            if not text or not intent:
                logger.warning(f"Skipping malformed training example: {record!r}")
                continue
            if intent not in INTENTS:
                logger.warning(f"Skipping training example with unknown intent {intent!r}")
                continue
            self.append(intent, text, record.get("slots") or {}, source="dataset")
            loaded += 1

        logger.info(f"📚 Loaded {loaded} training examples from {path}")
        return loaded

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(self, text: str) -> Optional[NearestNeighborMatch]:
        """
        Classify by exact match, then by similarity voting.

        Returns:
            The best match, or None when no exemplar clears the similarity floor
        """
        normalized = normalize(text)
        if not normalized:
            return None

        with self._lock:
            exact = self._exact.get(normalized)
            snapshot = list(self._exemplars)

        if exact is not None:
            return NearestNeighborMatch(
                intent=exact.intent,
                confidence=1.0,
                slots=dict(exact.slots),
                exact=True,
                neighbors=1,
                nearest_text=exact.text,
            )

        query_tokens = tokenize(normalized)
        query_keywords = self._keyword_intents(normalized)

        scored: List[Tuple[float, Exemplar]] = []
        for exemplar in snapshot:
            similarity = self.similarity(query_tokens, exemplar.tokens, query_keywords, exemplar.keyword_intents)
            if similarity > SIMILARITY_FLOOR:
                scored.append((similarity, exemplar))

        if not scored:
            return None

        scored.sort(key=lambda item: item[0], reverse=True)
        top = scored[:TOP_K]

        votes: Dict[str, float] = defaultdict(float)
        for similarity, exemplar in top:
            votes[exemplar.intent] += similarity

        winner = max(votes, key=votes.get)
        total_votes = sum(votes.values())
        average_similarity = total_votes / len(top)
        vote_share = votes[winner] / total_votes
        confidence = min(MAX_NON_EXACT_CONFIDENCE, average_similarity * vote_share)

        nearest = next(ex for _, ex in top if ex.intent == winner)
        return NearestNeighborMatch(
            intent=winner,
            confidence=max(0.0, confidence),
            slots={},
            exact=False,
            neighbors=len(top),
            nearest_text=nearest.text,
        )

    @staticmethod
    def similarity(
        query_tokens: List[str],
        exemplar_tokens: Tuple[str, ...],
        query_keywords: FrozenSet[str] = frozenset(),
        exemplar_keywords: FrozenSet[str] = frozenset(),
    ) -> float:
        """
        Token-overlap similarity in [0, 1].

        Each query token matched to an unused exemplar token scores 1 plus a
        positional-closeness bonus; sharing keywords of the same intent adds a
        fixed bonus. The total is normalized by the larger token count and
        damped by the length ratio.
        """
        if not query_tokens or not exemplar_tokens:
            return 0.0

        max_len = max(len(query_tokens), len(exemplar_tokens))
        used = set()
        score = 0.0
        for i, token in enumerate(query_tokens):
            best_j = None
            for j, candidate in enumerate(exemplar_tokens):
                if j in used or candidate != token:
                    continue
                if best_j is None or abs(i - j) < abs(i - best_j):
                    best_j = j
            if best_j is not None:
                used.add(best_j)
                score += 1.0 + POSITION_BONUS * (1.0 - abs(i - best_j) / max_len)

        if query_keywords & exemplar_keywords:
            score += KEYWORD_BONUS

        score /= max_len
        length_ratio = min(len(query_tokens), len(exemplar_tokens)) / max_len
        score *= 0.8 + 0.2 * length_ratio
        return min(1.0, max(0.0, score))

    def _keyword_intents(self, normalized: str) -> FrozenSet[str]:
        return frozenset(
            intent
            for intent, patterns in self._keyword_patterns.items()
            if intent != NONE_INTENT and any(p.search(normalized) for p in patterns)
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._exemplars)

    def intent_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = defaultdict(int)
        with self._lock:
            for exemplar in self._exemplars:
                counts[exemplar.intent] += 1
        return dict(counts)

    def __len__(self) -> int:
        return self.size
