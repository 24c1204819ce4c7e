"""
Multi-stage slot extraction.

Stages run in a fixed order and each stage may only fill slots that are still
absent, so the deterministic stages take precedence over the fuzzier ones:

    1. Temporal   - datetime point/range, duration, recurrence
    2. Entity     - email addresses, attendee names, #tags
    3. Intent     - titles, locations, note title/body, email subject/body
    4. Hints      - slots suggested by the completion call, if any
    5. Ambiguity  - completion-assisted refinement when required slots are
                    missing or confidence is low
"""

import re
import asyncio
import logging
from typing import Any, Dict, List, Optional

from .backends import CompletionRequest
from .completion_router import CompletionRouter, CompletionRouterError
from .parsing import extract_json_object
from .patterns import (
    DEFAULT_DURATIONS,
    DEFAULT_EVENT_DURATION,
    NONE_INTENT,
    REQUIRED_SLOTS,
    SLOT_NAMES,
    compile_patterns,
    get_slot_refinement_prompt,
    load_intent_patterns,
)
from .store import BackgroundWriter
from .temporal import MONTH_NAMES, WEEKDAYS, TemporalParser, TemporalResult

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
CC_PATTERN = re.compile(r"\b(?:cc|copy)(?:\s+in)?\s*:?\s*((?:[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}(?:\s*(?:,|and)\s*)?)+)", re.IGNORECASE)
ATTENDEES_PATTERN = re.compile(
    r"\bwith\s+((?:[A-Z][a-z'-]+)(?:\s+[A-Z][a-z'-]+)?(?:(?:\s*,\s*|\s+and\s+|\s*&\s*)[A-Z][a-z'-]+(?:\s+[A-Z][a-z'-]+)?)*)"
)
QUOTED_PATTERN = re.compile(r"[\"“]([^\"”]+)[\"”]")
ABOUT_PATTERN = re.compile(r"\babout\s+(.+?)\s*[.!?]?$", re.IGNORECASE)
SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")
TRAILING_PREPOSITIONS = re.compile(r"(?:\s+\b(?:on|at|in|for|from|to|by|starting|every)\b)+\s*$", re.IGNORECASE)

REFINEMENT_SYSTEM_PROMPT = (
    "You extract structured slots for a personal assistant. "
    "Respond with ONLY a JSON object of slot names to values."
)

NON_NAME_WORDS = {w.capitalize() for w in WEEKDAYS + MONTH_NAMES} | {"I", "Today", "Tomorrow", "Tonight", "Noon"}


def _clean_phrase(text: str) -> str:
    text = re.sub(r"\s+", " ", text).strip(" ,;:-")
    text = TRAILING_PREPOSITIONS.sub("", text)
    return text.strip(" ,;:-.!?")


def _remove_spans(text: str, spans: List[tuple]) -> str:
    """Blank out character spans, keeping word separation intact."""
    chars = list(text)
    for start, end in spans:
        for i in range(max(0, start), min(len(chars), end)):
            chars[i] = " "
    return "".join(chars)


class SlotExtractor:
    """
    Extract a slot map for a classified utterance.

    Args:
        router: Completion router used for refinement (None disables refinement)
        temporal_parser: Temporal phrase parser (clock injectable for tests)
        refinement_timeout: Budget for one refinement call in seconds
        ambiguity_threshold: Confidence below which refinement is attempted
        writer: Background executor that finishes refinements which outlive
            their budget
    """

    def __init__(
        self,
        router: Optional[CompletionRouter] = None,
        temporal_parser: Optional[TemporalParser] = None,
        refinement_timeout: float = 2.0,
        ambiguity_threshold: float = 0.7,
        compiled_patterns: Optional[Dict[str, Any]] = None,
        writer: Optional[BackgroundWriter] = None,
    ):
        self.router = router
        self.writer = writer or BackgroundWriter(name="slot-refinement")
        self.temporal_parser = temporal_parser or TemporalParser()
        self.refinement_timeout = refinement_timeout
        self.ambiguity_threshold = ambiguity_threshold
        self.patterns = compiled_patterns or compile_patterns(load_intent_patterns())
        self.refinements_attempted = 0
        self.refinements_failed = 0

    @staticmethod
    def missing_slots(intent: str, slots: Dict[str, Any]) -> List[str]:
        return [name for name in REQUIRED_SLOTS.get(intent, []) if not slots.get(name)]

    @staticmethod
    def _fill(slots: Dict[str, Any], candidates: Dict[str, Any]) -> None:
        for name, value in candidates.items():
            if value in (None, "", [], {}):
                continue
            if slots.get(name) in (None, "", [], {}):
                slots[name] = value

    async def extract_slots(
        self,
        text: str,
        intent: str,
        confidence: Optional[float] = None,
        seed: Optional[Dict[str, Any]] = None,
        hints: Optional[Dict[str, Any]] = None,
        allow_refinement: bool = True,
    ) -> Dict[str, Any]:
        """
        Run every stage and return the merged slot map.

        Args:
            text: Original utterance
            intent: Classified intent
            confidence: Classification confidence (drives the ambiguity check)
            seed: Slots that are already known (exemplar slots, previous run)
            hints: Slots suggested by the completion call
            allow_refinement: Permit the completion-assisted refinement stage

        Returns:
            Slot map; never raises for extraction problems
        """
        slots: Dict[str, Any] = dict(seed or {})
        if intent == NONE_INTENT or not text:
            return slots

        temporal = self.temporal_parser.parse(text)
        self._fill(slots, self._temporal_slots(temporal, intent))
        self._fill(slots, self._entity_slots(text, intent))
        self._fill(slots, self._intent_slots(text, intent, temporal))
        if hints:
            self._fill(slots, self._sanitize(hints))

        missing = self.missing_slots(intent, slots)
        low_confidence = confidence is not None and confidence < self.ambiguity_threshold
        if allow_refinement and self.router is not None and (missing or low_confidence):
            self._fill(slots, await self._refine(text, intent, slots, missing))

        return slots

    # ------------------------------------------------------------------
    # Stage 1: temporal
    # ------------------------------------------------------------------

    @staticmethod
    def _temporal_slots(temporal: TemporalResult, intent: str) -> Dict[str, Any]:
        if intent not in ("create_event", "add_reminder"):
            return {}

        slots: Dict[str, Any] = {}
        if temporal.point is not None:
            slots["datetime_point"] = temporal.point.isoformat()
        if intent == "create_event":
            if temporal.range_start is not None and temporal.range_end is not None:
                slots["datetime_range"] = {
                    "start": temporal.range_start.isoformat(),
                    "end": temporal.range_end.isoformat(),
                }
            if temporal.duration_min is not None:
                slots["duration_min"] = temporal.duration_min
        if temporal.recurrence:
            slots["recurrence"] = temporal.recurrence
        return slots

    # ------------------------------------------------------------------
    # Stage 2: entities
    # ------------------------------------------------------------------

    def _entity_slots(self, text: str, intent: str) -> Dict[str, Any]:
        slots: Dict[str, Any] = {}
        emails = EMAIL_PATTERN.findall(text)

        if intent == "send_email" and emails:
            cc: List[str] = []
            cc_match = CC_PATTERN.search(text)
            if cc_match:
                cc = EMAIL_PATTERN.findall(cc_match.group(1))
            to = [e for e in emails if e not in cc]
            if to:
                slots["email_to"] = to
            if cc:
                slots["email_cc"] = cc
        elif intent == "read_email" and emails:
            slots["email_from"] = emails[0]
        elif intent == "create_event":
            attendees: List[str] = []
            match = ATTENDEES_PATTERN.search(text)
            if match:
                for name in re.split(r"\s*,\s*|\s+and\s+|\s*&\s*", match.group(1)):
                    name = name.strip()
                    if name and name not in NON_NAME_WORDS and name not in attendees:
                        attendees.append(name)
            attendees.extend(e for e in emails if e not in attendees)
            if attendees:
                slots["attendees"] = attendees
        elif intent == "create_note":
            tags = self.patterns["create_note"]["entity_patterns"]["tag"].findall(text)
            if tags:
                slots["tags"] = [t.lower() for t in dict.fromkeys(tags)]
        return slots

    # ------------------------------------------------------------------
    # Stage 3: intent-specific heuristics
    # ------------------------------------------------------------------

    def _intent_slots(self, text: str, intent: str, temporal: TemporalResult) -> Dict[str, Any]:
        if intent == "create_event":
            return self._event_slots(text, temporal)
        if intent == "add_reminder":
            return self._reminder_slots(text, temporal)
        if intent == "create_note":
            return self._note_slots(text)
        if intent == "send_email":
            return self._send_email_slots(text)
        if intent == "read_email":
            return self._read_email_slots(text)
        return {}

    def _event_slots(self, text: str, temporal: TemporalResult) -> Dict[str, Any]:
        patterns = self.patterns["create_event"]["entity_patterns"]
        slots: Dict[str, Any] = {}
        spans = list(temporal.spans)

        location_match = patterns["location"].search(text)
        if location_match:
            location = location_match.group(1).strip()
            if re.sub(r"'s$", "", location.split()[0]) not in NON_NAME_WORDS:
                slots["location"] = location
                spans.append(location_match.span())

        attendees_match = ATTENDEES_PATTERN.search(text)
        if attendees_match:
            names = re.split(r"\s*,\s*|\s+and\s+|\s*&\s*", attendees_match.group(1))
            if any(name.strip() not in NON_NAME_WORDS for name in names):
                spans.append(attendees_match.span())

        quoted = QUOTED_PATTERN.search(text)
        if quoted:
            title = quoted.group(1).strip()
        else:
            remainder = _remove_spans(text, spans)
            remainder = patterns["leading_verb"].sub("", remainder.strip())
            title = _clean_phrase(remainder)
            title = re.sub(r"^(?:a|an|the|my)\s+", "", title, flags=re.IGNORECASE)
        slots["title"] = title or "Untitled Event"

        lowered = text.lower()
        duration = DEFAULT_EVENT_DURATION
        for keyword, minutes in DEFAULT_DURATIONS.items():
            if re.search(rf"(?<![\w-]){re.escape(keyword)}(?![\w-])", lowered):
                duration = minutes
                break
        slots["duration_min"] = duration
        return slots

    def _reminder_slots(self, text: str, temporal: TemporalResult) -> Dict[str, Any]:
        leading = self.patterns["add_reminder"]["entity_patterns"]["leading_phrase"]
        remainder = _remove_spans(text, temporal.spans)
        title = _clean_phrase(leading.sub("", remainder.strip()))
        return {"title": title} if title else {}

    def _note_slots(self, text: str) -> Dict[str, Any]:
        leading = self.patterns["create_note"]["entity_patterns"]["leading_phrase"]
        content = leading.sub("", text.strip()).strip()
        if not content:
            return {}

        parts = [p.strip() for p in SENTENCE_SPLIT.split(content) if p.strip()]
        if len(parts) > 1:
            return {
                "note_title": parts[0].rstrip(".!?:"),
                "note_body": " ".join(parts[1:]),
            }

        words = content.split()
        return {
            "note_title": " ".join(words[:5]).rstrip(".!?:,"),
            "note_body": content,
        }

    def _send_email_slots(self, text: str) -> Dict[str, Any]:
        patterns = self.patterns["send_email"]["entity_patterns"]
        slots: Dict[str, Any] = {}

        body_match = patterns["body"].search(text)
        if body_match:
            slots["email_body"] = body_match.group(1).strip()

        subject_text = text[:body_match.start()] if body_match else text
        subject_match = patterns["subject"].search(subject_text)
        if subject_match:
            slots["email_subject"] = subject_match.group(1).strip()
        else:
            about = ABOUT_PATTERN.search(subject_text)
            if about:
                slots["email_subject"] = _clean_phrase(about.group(1))
        return slots

    def _read_email_slots(self, text: str) -> Dict[str, Any]:
        patterns = self.patterns["read_email"]["entity_patterns"]
        slots: Dict[str, Any] = {}
        label = patterns["label"].search(text)
        if label:
            slots["email_label"] = label.group(1).lower()
        time_range = patterns["time_range"].search(text)
        if time_range:
            slots["time_range"] = time_range.group(1).lower().replace(" ", "_")
        return slots

    # ------------------------------------------------------------------
    # Stages 4-5: hints and refinement
    # ------------------------------------------------------------------

    @staticmethod
    def _sanitize(candidate: Dict[str, Any]) -> Dict[str, Any]:
        cleaned: Dict[str, Any] = {}
        for name, value in candidate.items():
            if name not in SLOT_NAMES or value in (None, "", [], {}):
                continue
            if name in ("email_to", "email_cc", "attendees", "tags") and isinstance(value, str):
                value = [v.strip() for v in value.split(",") if v.strip()]
            cleaned[name] = value
        return cleaned

    @staticmethod
    async def _settle_refinement(task: "asyncio.Future") -> None:
        try:
            await task
        except CompletionRouterError as e:
            logger.info(f"Late slot refinement failed: {e}")

    async def _refine(self, text: str, intent: str, slots: Dict[str, Any], missing: List[str]) -> Dict[str, Any]:
        self.refinements_attempted += 1
        request = CompletionRequest(
            prompt=get_slot_refinement_prompt(text, intent, slots, missing),
            system_prompt=REFINEMENT_SYSTEM_PROMPT,
            temperature=0.1,
            max_tokens=300,
            response_format="json",
            complexity="low",
        )
        # Timing out abandons the wait, not the router call
        task = asyncio.ensure_future(self.router.complete(request))
        try:
            response = await asyncio.wait_for(asyncio.shield(task), timeout=self.refinement_timeout)
            refined = extract_json_object(response.content)
        except asyncio.TimeoutError:
            self.refinements_failed += 1
            logger.warning(f"⏱️ Slot refinement timed out after {self.refinement_timeout}s")
            self.writer.submit(self._settle_refinement(task), label="refinement")
            return {}
        except (CompletionRouterError, ValueError) as e:
            self.refinements_failed += 1
            logger.warning(f"⚠️ Slot refinement failed: {e}")
            return {}

        if isinstance(refined.get("slots"), dict):
            refined = refined["slots"]
        logger.debug(f"Slot refinement for {intent} returned {list(refined)}")
        return self._sanitize(refined)
