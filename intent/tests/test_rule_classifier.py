"""
Tests for the rule-based classification floor and the prompt builders.
"""

import pytest

from ..patterns import (
    INTENTS,
    get_classification_prompt,
    get_slot_refinement_prompt,
    get_system_prompt,
)
from ..rule_classifier import FALLBACK_CONFIDENCE, RULE_CONFIDENCE, RuleBasedClassifier


@pytest.fixture
def rules():
    return RuleBasedClassifier()


@pytest.mark.parametrize("text,intent", [
    ("Schedule a sync with the team", "create_event"),
    ("Put the dentist appointment in my CALENDAR", "create_event"),
    ("remind me to buy milk", "add_reminder"),
    ("Ping me when the build finishes", "add_reminder"),
    ("jot this down: new logo idea", "create_note"),
    ("please write down the door code", "create_note"),
    ("check my emails", "read_email"),
    ("show me the inbox", "read_email"),
    ("send a message to Bob", "send_email"),
    ("compose an email for the board", "send_email"),
])
def test_rule_matches(rules, text, intent):
    result = rules.classify(text)
    assert result == {"intent": intent, "confidence": RULE_CONFIDENCE}


def test_rule_order_first_match_wins(rules):
    # Mentions both a meeting and a reminder; event rules come first
    assert rules.classify("remind me about the meeting")["intent"] == "create_event"


@pytest.mark.parametrize("text", ["xyzzy plugh", "", "what a lovely day"])
def test_no_rule_falls_back_to_none(rules, text):
    assert rules.classify(text) == {"intent": "none", "confidence": FALLBACK_CONFIDENCE}


def test_keywords_need_word_boundaries(rules):
    # "notebook" and "checkmate" must not trigger note/email rules
    assert rules.classify("my notebook is checkmate")["intent"] == "none"


def test_system_prompt_lists_every_intent():
    prompt = get_system_prompt()
    for intent in INTENTS:
        assert intent in prompt
    assert '"intent"' in prompt and '"confidence"' in prompt and '"slots"' in prompt


def test_prompts_lead_with_task_and_utterance():
    assert get_classification_prompt("hi there").startswith('Classify: "hi there"')
    refinement = get_slot_refinement_prompt("lunch friday", "create_event", {"title": "lunch"}, ["datetime_point"])
    assert refinement.startswith('Refine create_event slots: "lunch friday"')
    assert "datetime_point" in refinement
