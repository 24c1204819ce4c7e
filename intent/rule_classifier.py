"""
Rule-based intent classifier - the floor of the classification cascade.

Deterministic, dependency-free and total: every input yields a result.
"""

from typing import Any, Dict, Optional

from .patterns import NONE_INTENT, compile_patterns, load_intent_patterns

RULE_CONFIDENCE = 0.7
FALLBACK_CONFIDENCE = 0.5


class RuleBasedClassifier:
    """Ordered (keyword regex -> intent) rules with fixed confidences."""

    def __init__(self, compiled_patterns: Optional[Dict[str, Any]] = None):
        patterns = compiled_patterns or compile_patterns(load_intent_patterns())
        self._rules = [(intent, data["rule_pattern"]) for intent, data in patterns.items()]

    def classify(self, text: str) -> Dict[str, Any]:
        lowered = (text or "").lower()
        for intent, pattern in self._rules:
            if pattern.search(lowered):
                return {"intent": intent, "confidence": RULE_CONFIDENCE}
        return {"intent": NONE_INTENT, "confidence": FALLBACK_CONFIDENCE}
