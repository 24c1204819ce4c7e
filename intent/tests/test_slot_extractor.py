"""
Tests for multi-stage slot extraction.

Relative dates resolve against Monday 2026-10-19 09:00.
"""

import asyncio

import pytest

from ..backends import BackendError
from ..retry import RetryPolicy
from ..slot_extractor import SlotExtractor
from .conftest import FakeBackend, build_router


@pytest.fixture
def extractor(temporal_parser):
    return SlotExtractor(temporal_parser=temporal_parser)


def extractor_with(temporal_parser, backend, fake_clock, timeout=0.5):
    router = build_router([backend], clock=fake_clock)
    return SlotExtractor(router=router, temporal_parser=temporal_parser, refinement_timeout=timeout)


# ============================================================================
# create_event
# ============================================================================

@pytest.mark.asyncio
async def test_event_end_to_end(extractor):
    slots = await extractor.extract_slots("Schedule a team meeting tomorrow at 3pm", "create_event", 0.9)

    assert slots["datetime_point"] == "2026-10-20T15:00:00"
    assert slots["title"] == "team meeting"
    assert slots["duration_min"] == 60
    assert "location" not in slots


@pytest.mark.asyncio
async def test_event_attendees_location_and_default_duration(extractor):
    slots = await extractor.extract_slots(
        "Lunch with Sarah and Tom at Cafe Luna on friday at 1pm", "create_event", 0.9
    )

    assert slots["attendees"] == ["Sarah", "Tom"]
    assert slots["location"] == "Cafe Luna"
    assert slots["datetime_point"] == "2026-10-23T13:00:00"
    assert slots["duration_min"] == 60
    assert slots["title"] == "Lunch"


@pytest.mark.asyncio
async def test_event_bare_hour_and_attendee_stay_out_of_title(extractor):
    slots = await extractor.extract_slots("Schedule a meeting with Dana tomorrow at 10", "create_event", 0.9)

    assert slots["datetime_point"] == "2026-10-20T10:00:00"
    assert slots["attendees"] == ["Dana"]
    assert slots["title"] == "meeting"


@pytest.mark.asyncio
async def test_event_quoted_title_wins(extractor):
    slots = await extractor.extract_slots('Schedule "Quarterly Review" tomorrow at 10am', "create_event", 0.9)
    assert slots["title"] == "Quarterly Review"


@pytest.mark.asyncio
async def test_event_range_and_keyword_duration(extractor):
    slots = await extractor.extract_slots("Book an interview tomorrow 9-10am", "create_event", 0.9)

    assert slots["datetime_range"] == {
        "start": "2026-10-20T09:00:00",
        "end": "2026-10-20T10:00:00",
    }
    assert slots["duration_min"] == 60
    assert slots["title"] == "interview"


@pytest.mark.asyncio
async def test_event_keyword_default_duration(extractor):
    slots = await extractor.extract_slots("Book an interview tomorrow at 9am", "create_event", 0.9)
    assert slots["duration_min"] == 45


@pytest.mark.asyncio
async def test_event_weekday_is_not_a_location(extractor):
    slots = await extractor.extract_slots("Schedule a sync in Friday's slot", "create_event", 0.9)
    assert "location" not in slots


@pytest.mark.asyncio
async def test_event_recurrence(extractor):
    slots = await extractor.extract_slots("Schedule a standup every weekday at 9am", "create_event", 0.9)
    assert slots["recurrence"] == "weekdays"
    assert slots["duration_min"] == 15


# ============================================================================
# Other intents
# ============================================================================

@pytest.mark.asyncio
async def test_reminder_title_and_time(extractor):
    slots = await extractor.extract_slots("Remind me to call mom tomorrow at 6pm", "add_reminder", 0.9)

    assert slots["title"] == "call mom"
    assert slots["datetime_point"] == "2026-10-20T18:00:00"
    assert "duration_min" not in slots


@pytest.mark.asyncio
async def test_note_single_sentence(extractor):
    slots = await extractor.extract_slots("Take a note that the wifi password is hunter2", "create_note", 0.9)
    assert slots["note_body"] == "the wifi password is hunter2"
    assert slots["note_title"] == "the wifi password is hunter2"


@pytest.mark.asyncio
async def test_note_title_body_split_and_tags(extractor):
    slots = await extractor.extract_slots(
        "Note: Groceries. Buy milk and eggs #Shopping #home", "create_note", 0.9
    )
    assert slots["note_title"] == "Groceries"
    assert slots["note_body"] == "Buy milk and eggs #Shopping #home"
    assert slots["tags"] == ["shopping", "home"]


@pytest.mark.asyncio
async def test_send_email_recipients_cc_and_subject(extractor):
    slots = await extractor.extract_slots(
        "Send an email to bob@example.com cc carol@example.com about the Q3 budget", "send_email", 0.9
    )
    assert slots["email_to"] == ["bob@example.com"]
    assert slots["email_cc"] == ["carol@example.com"]
    assert slots["email_subject"] == "the Q3 budget"


@pytest.mark.asyncio
async def test_send_email_body(extractor):
    slots = await extractor.extract_slots(
        "Email alex@example.com saying the demo moved to Friday", "send_email", 0.9
    )
    assert slots["email_to"] == ["alex@example.com"]
    assert slots["email_body"] == "the demo moved to Friday"


@pytest.mark.asyncio
async def test_read_email_filters(extractor):
    slots = await extractor.extract_slots(
        "Show unread emails from dana@example.com this week", "read_email", 0.9
    )
    assert slots == {
        "email_from": "dana@example.com",
        "email_label": "unread",
        "time_range": "this_week",
    }


@pytest.mark.asyncio
async def test_none_intent_returns_seed_only(extractor):
    assert await extractor.extract_slots("tomorrow at 3pm", "none", 0.9) == {}
    assert await extractor.extract_slots("hi", "none", 0.9, seed={"x": 1}) == {"x": 1}


# ============================================================================
# Precedence, hints and idempotence
# ============================================================================

@pytest.mark.asyncio
async def test_seed_and_earlier_stages_take_precedence(extractor):
    slots = await extractor.extract_slots(
        "Schedule a team meeting tomorrow at 3pm",
        "create_event",
        0.9,
        seed={"title": "Team Sync"},
        hints={"title": "ignored", "location": "Room 4", "attendees": "Ann, Bob"},
    )
    assert slots["title"] == "Team Sync"
    assert slots["location"] == "Room 4"
    assert slots["attendees"] == ["Ann", "Bob"]


@pytest.mark.asyncio
async def test_extraction_is_idempotent(extractor):
    text = "Lunch with Sarah at Cafe Luna tomorrow from 12 to 1pm"
    first = await extractor.extract_slots(text, "create_event", 0.9)
    second = await extractor.extract_slots(text, "create_event", 0.9)
    reseeded = await extractor.extract_slots(text, "create_event", 0.9, seed=first)

    assert first == second == reseeded


@pytest.mark.asyncio
async def test_missing_slots():
    assert SlotExtractor.missing_slots("create_event", {"title": "x"}) == ["datetime_point"]
    assert SlotExtractor.missing_slots("read_email", {}) == []


# ============================================================================
# Refinement
# ============================================================================

@pytest.mark.asyncio
async def test_refinement_fills_missing_slots(temporal_parser, fake_clock):
    backend = FakeBackend("refiner", script=['{"datetime_point": "2026-10-23T10:00:00", "title": "other"}'], clock=fake_clock)
    extractor = extractor_with(temporal_parser, backend, fake_clock)

    slots = await extractor.extract_slots("Schedule the offsite", "create_event", 0.9)

    assert slots["datetime_point"] == "2026-10-23T10:00:00"
    assert slots["title"] == "offsite"
    assert extractor.refinements_attempted == 1
    assert backend.requests[0].response_format == "json"
    assert backend.requests[0].prompt.startswith("Refine create_event slots")


@pytest.mark.asyncio
async def test_refinement_triggered_by_low_confidence(temporal_parser, fake_clock):
    backend = FakeBackend("refiner", script=['{"slots": {"location": "HQ"}}'], clock=fake_clock)
    extractor = extractor_with(temporal_parser, backend, fake_clock)

    slots = await extractor.extract_slots("Schedule a meeting tomorrow at 3pm", "create_event", 0.4)
    assert slots["location"] == "HQ"


@pytest.mark.asyncio
async def test_no_refinement_when_complete_and_confident(temporal_parser, fake_clock):
    backend = FakeBackend("refiner", clock=fake_clock)
    extractor = extractor_with(temporal_parser, backend, fake_clock)

    await extractor.extract_slots("Schedule a meeting tomorrow at 3pm", "create_event", 0.9)
    assert backend.calls == 0


@pytest.mark.asyncio
async def test_refinement_disallowed(temporal_parser, fake_clock):
    backend = FakeBackend("refiner", clock=fake_clock)
    extractor = extractor_with(temporal_parser, backend, fake_clock)

    slots = await extractor.extract_slots("Schedule the offsite", "create_event", 0.3, allow_refinement=False)
    assert "datetime_point" not in slots
    assert backend.calls == 0


@pytest.mark.asyncio
async def test_refinement_failure_keeps_deterministic_slots(temporal_parser, fake_clock):
    backend = FakeBackend("refiner", script=[BackendError("bad", status_code=400)], clock=fake_clock)
    extractor = extractor_with(temporal_parser, backend, fake_clock)

    slots = await extractor.extract_slots("Schedule the offsite", "create_event", 0.9)

    assert slots["title"] == "offsite"
    assert extractor.refinements_failed == 1


@pytest.mark.asyncio
async def test_refinement_timeout(temporal_parser, fake_clock):
    backend = FakeBackend("refiner", script=['{"datetime_point": "x"}'], clock=fake_clock, delay=1.0)
    extractor = extractor_with(temporal_parser, backend, fake_clock, timeout=0.05)

    slots = await extractor.extract_slots("Schedule the offsite", "create_event", 0.9)

    assert "datetime_point" not in slots
    assert extractor.refinements_failed == 1

    await extractor.writer.drain(timeout=2.0)
    assert backend.calls == 1
    assert extractor.writer.failed == 0


@pytest.mark.asyncio
async def test_refinement_failover_finishes_after_timeout(temporal_parser, fake_clock):
    primary = FakeBackend("primary", script=[BackendError("unavailable", status_code=503)], priority=1, clock=fake_clock)
    fallback = FakeBackend("fallback", script=['{"location": "Room 4"}'], priority=2, clock=fake_clock)
    router = build_router(
        [primary, fallback],
        clock=fake_clock,
        retry_policy=RetryPolicy(max_attempts=2, base_delay=0.2, max_delay=1.0, jitter=False),
        sleep=asyncio.sleep,
    )
    extractor = SlotExtractor(router=router, temporal_parser=temporal_parser, refinement_timeout=0.05)

    slots = await extractor.extract_slots("Schedule the offsite", "create_event", 0.9)
    assert "location" not in slots

    await extractor.writer.drain(timeout=2.0)

    assert primary.healthy is False
    assert fallback.calls == 1
    again = await extractor.extract_slots("Schedule the offsite", "create_event", 0.9)
    assert again["location"] == "Room 4"
    assert primary.calls == 2


@pytest.mark.asyncio
async def test_refinement_unparseable_output(temporal_parser, fake_clock):
    backend = FakeBackend("refiner", script=["I cannot help with that"], clock=fake_clock)
    extractor = extractor_with(temporal_parser, backend, fake_clock)

    slots = await extractor.extract_slots("Schedule the offsite", "create_event", 0.9)

    assert "datetime_point" not in slots
    assert extractor.refinements_failed == 1


@pytest.mark.asyncio
async def test_unknown_slot_names_are_dropped(extractor):
    slots = await extractor.extract_slots(
        "Schedule a team meeting tomorrow at 3pm",
        "create_event",
        0.9,
        hints={"intent": "create_event", "confidence": 0.9, "location": "Room 4"},
    )
    assert slots["location"] == "Room 4"
    assert "intent" not in slots
    assert "confidence" not in slots
