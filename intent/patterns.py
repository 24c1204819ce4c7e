"""
Intent taxonomy, keyword patterns and prompts for the assistant intents.

Intents:
    - create_event: scheduling calendar events, meetings, appointments
    - add_reminder: reminders, alerts, nudges
    - create_note: notes, saved thoughts, documentation
    - read_email: checking, reading, searching email
    - send_email: composing, sending, replying to email
    - none: anything else
"""

import re
import json
from typing import Any, Dict, List

NONE_INTENT = "none"

INTENTS: List[str] = [
    "create_event",
    "add_reminder",
    "create_note",
    "read_email",
    "send_email",
    NONE_INTENT,
]

# Slots that must be present before a result is considered complete
REQUIRED_SLOTS: Dict[str, List[str]] = {
    "create_event": ["title", "datetime_point"],
    "add_reminder": ["title"],
    "create_note": ["note_body"],
    "send_email": ["email_to"],
    "read_email": [],
    NONE_INTENT: [],
}

# Every slot name the extractor and completion calls may populate
SLOT_NAMES = frozenset([
    "title", "datetime_point", "datetime_range", "duration_min", "location",
    "attendees", "recurrence", "note_title", "note_body", "tags",
    "email_to", "email_cc", "email_subject", "email_body",
    "email_from", "email_label", "time_range",
])

# Event keyword -> default duration in minutes
DEFAULT_DURATIONS: Dict[str, int] = {
    "lunch": 60,
    "meeting": 60,
    "standup": 15,
    "stand-up": 15,
    "1:1": 30,
    "one on one": 30,
    "interview": 45,
    "coffee": 30,
    "all-hands": 60,
    "workshop": 120,
    "training": 90,
    "conference": 480,
}
DEFAULT_EVENT_DURATION = 60


def load_intent_patterns() -> Dict[str, Any]:
    """
    Load keyword and rule patterns for every actionable intent.

    The insertion order of the returned dict is the rule order: the first
    intent whose rule pattern matches wins.

    Pattern Categories:
        - keywords: canonical words used by the nearest-neighbor keyword bonus
        - rule_pattern: single regex used by the rule-based floor
        - entity_patterns: intent-specific extraction helpers

    Returns:
        Dictionary keyed by intent name
    """
    return {
        "create_event": {
            "keywords": [
                "schedule", "meeting", "appointment", "calendar", "book",
                "event", "lunch", "standup", "interview", "call", "sync",
            ],
            "rule_pattern": r"\b(schedule|meeting|appointment|calendar|book)\b",
            "entity_patterns": {
                "location": r"\b(?:at|in)\s+((?:[A-Z][\w'&-]*)(?:\s+(?:[A-Z][\w'&-]*|of|the|and))*)",
                "leading_verb": r"^\s*(?:please\s+)?(?:can you\s+)?(?:schedule|book|add|create|set up|plan|put)\s+(?:(?:a|an|the|my)\s+)?",
            },
        },
        "add_reminder": {
            "keywords": ["remind", "reminder", "ping", "alert", "nudge", "remember", "don't forget"],
            "rule_pattern": r"\b(remind|reminder|ping|alert|nudge)\b",
            "entity_patterns": {
                "leading_phrase": r"^\s*(?:please\s+)?(?:set\s+(?:a\s+)?reminder\s+(?:to|for|about)\s+|remind\s+me\s+(?:to|about|of|that)\s+|remind\s+me\s+|ping\s+me\s+(?:to|about)\s+|nudge\s+me\s+(?:to|about)\s+|alert\s+me\s+(?:to|about)\s+)",
            },
        },
        "create_note": {
            "keywords": ["note", "jot", "write down", "save", "capture", "document", "idea"],
            "rule_pattern": r"\b(note|jot|write down|save|capture|document)\b",
            "entity_patterns": {
                "leading_phrase": r"^\s*(?:please\s+)?(?:(?:take|make|create|add)\s+a\s+note(?:\s+(?:that|about|saying))?:?\s*|note(?:\s+(?:that|down))?:?\s*|jot\s+down:?\s*|write\s+down:?\s*|save(?:\s+a\s+note)?:?\s*|capture:?\s*)",
                "tag": r"#(\w+)",
            },
        },
        "read_email": {
            "keywords": ["check", "read", "inbox", "unread", "email", "mail", "messages"],
            "rule_pattern": r"\b(check|read|show|list|scan)\b.*\b(emails?|mail|messages?|inbox)\b",
            "entity_patterns": {
                "label": r"\b(unread|important|starred|inbox|sent|drafts?)\b",
                "time_range": r"\b(today|yesterday|this week|last week|this month)\b",
            },
        },
        "send_email": {
            "keywords": ["send", "compose", "draft", "reply", "forward", "email", "write"],
            "rule_pattern": r"\b(send|email|compose|draft|write|reply|forward)\b.*\b(emails?|messages?|mail)\b",
            "entity_patterns": {
                "subject": r"\b(?:subject|re|regarding)\b\s*[:\-]?\s*[\"']?([^\"'\n]+?)[\"']?(?=\s+(?:body|saying|message)\b|[.\n]|$)",
                "body": r"\b(?:saying|that says|(?:body|message)\s*:)\s*[\"']?(.+?)[\"']?\s*$",
            },
        },
    }


def compile_patterns(patterns: Dict[str, Any]) -> Dict[str, Any]:
    """
    Compile regex patterns for performance.

    Entity patterns whose names mark them as prose-level (``location``) keep
    case sensitivity so capitalized phrases can be told apart.
    """
    compiled = {}
    for intent_name, intent_data in patterns.items():
        compiled[intent_name] = {"keywords": list(intent_data["keywords"])}
        compiled[intent_name]["rule_pattern"] = re.compile(intent_data["rule_pattern"], re.IGNORECASE)
        compiled[intent_name]["entity_patterns"] = {
            name: re.compile(pattern) if name == "location" else re.compile(pattern, re.IGNORECASE)
            for name, pattern in intent_data.get("entity_patterns", {}).items()
        }
    return compiled


def get_intent_keywords(patterns: Dict[str, Any]) -> Dict[str, List[str]]:
    return {intent: data["keywords"] for intent, data in patterns.items()}


def get_system_prompt() -> str:
    """
    System prompt for completion-based intent classification.

    Returns:
        System prompt string listing intents, slots and the JSON contract
    """
    return """You are an intent classifier for a personal assistant.
Classify the user's request into exactly one of these intents:
- create_event: scheduling calendar events, meetings, appointments
- add_reminder: setting reminders, alerts, notifications
- create_note: taking notes, saving thoughts, documenting
- read_email: checking, reading, searching emails
- send_email: composing, sending, replying to emails
- none: anything else

Also extract relevant slots when present:
- title: event/reminder/note title
- datetime_point: specific date/time (ISO-8601)
- datetime_range: {"start": ISO-8601, "end": ISO-8601}
- duration_min: duration in minutes
- location: event location
- attendees: list of people
- email_to: list of recipient email addresses
- email_subject: email subject
- email_body: email content
- note_title / note_body: note content

Respond with ONLY a JSON object, no prose:
{"intent": "<intent>", "confidence": <0.0-1.0>, "slots": {...}}"""


def get_classification_prompt(text: str) -> str:
    # Task label and utterance lead so the completion cache key stays distinctive
    return f'Classify: "{text}"\nReturn the intent, confidence and slots as JSON.'


def get_slot_refinement_prompt(text: str, intent: str, slots: Dict[str, Any], missing: List[str]) -> str:
    return (
        f'Refine {intent} slots: "{text}"\n'
        f"Slots extracted so far: {json.dumps(slots, default=str, sort_keys=True)}\n"
        f"Missing required slots: {', '.join(missing) if missing else 'none'}\n"
        "Return ONLY a JSON object containing the missing or corrected slots. "
        "Use ISO-8601 for dates and times. Do not repeat slots that are already correct."
    )
