"""
Tests for temporal phrase parsing.

All relative phrases resolve against Monday 2026-10-19 09:00.
"""

from datetime import datetime, time

import pytest

from ..temporal import TemporalParser, bare_hour_time, parse_clock, parse_duration, parse_recurrence
from .conftest import FIXED_NOW


@pytest.fixture
def parser():
    return TemporalParser(clock=lambda: FIXED_NOW)


@pytest.mark.parametrize("text,expected", [
    ("tomorrow at 3pm", datetime(2026, 10, 20, 15, 0)),
    ("at 5pm", datetime(2026, 10, 19, 17, 0)),
    ("at 10:30", datetime(2026, 10, 19, 10, 30)),
    ("tonight", datetime(2026, 10, 19, 20, 0)),
    ("tomorrow morning", datetime(2026, 10, 20, 9, 0)),
    ("the day after tomorrow", datetime(2026, 10, 21, 12, 0)),
    ("on friday", datetime(2026, 10, 23, 12, 0)),
    ("next monday at noon", datetime(2026, 10, 26, 12, 0)),
    ("in 30 minutes", datetime(2026, 10, 19, 9, 30)),
    ("in 2 hours", datetime(2026, 10, 19, 11, 0)),
    ("in 2 days", datetime(2026, 10, 21, 12, 0)),
])
def test_point_resolution(parser, text, expected):
    assert parser.parse(text).point == expected


def test_past_time_without_day_rolls_to_tomorrow(parser):
    assert parser.parse("call at 8am").point == datetime(2026, 10, 20, 8, 0)


@pytest.mark.parametrize("text,expected", [
    ("tomorrow at 10", datetime(2026, 10, 20, 10, 0)),
    ("tomorrow at 5", datetime(2026, 10, 20, 17, 0)),
    ("friday at 12", datetime(2026, 10, 23, 12, 0)),
    ("tomorrow at 18", datetime(2026, 10, 20, 18, 0)),
    ("at 8", datetime(2026, 10, 20, 8, 0)),
])
def test_bare_hour_after_at(parser, text, expected):
    result = parser.parse(text)

    assert result.point == expected
    start = text.index("at ")
    assert (start, len(text)) in result.spans


@pytest.mark.parametrize("hour,expected", [
    (1, time(13, 0)),
    (7, time(19, 0)),
    (8, time(8, 0)),
    (11, time(11, 0)),
    (12, time(12, 0)),
    (0, time(0, 0)),
    (21, time(21, 0)),
    (24, None),
])
def test_bare_hour_meridiem(hour, expected):
    assert bare_hour_time(hour) == expected


@pytest.mark.parametrize("text", ["tomorrow at 100", "tomorrow at 5 minutes past"])
def test_bare_hour_ignores_other_numbers(parser, text):
    assert parser.parse(text).point == datetime(2026, 10, 20, 12, 0)


def test_explicit_now_overrides_clock(parser):
    result = parser.parse("at 8am", now=datetime(2026, 10, 19, 7, 0))
    assert result.point == datetime(2026, 10, 19, 8, 0)


def test_range_inherits_meridiem(parser):
    result = parser.parse("sync 3-4pm")
    assert result.range_start == datetime(2026, 10, 19, 15, 0)
    assert result.range_end == datetime(2026, 10, 19, 16, 0)
    assert result.duration_min == 60
    assert result.point == result.range_start


def test_range_crossing_noon(parser):
    result = parser.parse("workshop tomorrow from 11 to 1pm")
    assert result.range_start == datetime(2026, 10, 20, 11, 0)
    assert result.range_end == datetime(2026, 10, 20, 13, 0)
    assert result.duration_min == 120


def test_explicit_duration_overrides_range_end(parser):
    result = parser.parse("tomorrow from 2pm to 3pm for 90 minutes")
    assert result.explicit_duration is True
    assert result.duration_min == 90
    assert result.range_end == datetime(2026, 10, 20, 15, 30)


@pytest.mark.parametrize("text,minutes", [
    ("for 2 hours", 120),
    ("for half an hour", 30),
    ("a 45-minute interview", 45),
    ("for an hour", 60),
])
def test_parse_duration(text, minutes):
    assert parse_duration(text)[0] == minutes


def test_relative_offset_is_not_a_duration():
    assert parse_duration("in 30 minutes") is None


@pytest.mark.parametrize("text,tag", [
    ("standup every weekday at 9am", "weekdays"),
    ("gym on weekends", "weekends"),
    ("water plants daily", "daily"),
    ("team sync weekly", "weekly"),
    ("pay rent monthly", "monthly"),
    ("piano lesson every friday", "weekly:friday"),
])
def test_parse_recurrence(text, tag):
    assert parse_recurrence(text)[0] == tag


def test_recurrence_is_reported_with_time(parser):
    result = parser.parse("standup every weekday at 9am")
    assert result.recurrence == "weekdays"
    assert result.point.time() == time(9, 0)


def test_absolute_date_uses_dateparser(parser):
    result = parser.parse("dentist on March 5th")
    assert (result.point.year, result.point.month, result.point.day) == (2027, 3, 5)


@pytest.mark.parametrize("token,expected", [
    ("3pm", (time(15, 0), True)),
    ("12am", (time(0, 0), True)),
    ("12:30 p.m.", (time(12, 30), True)),
    ("7 o'clock", (time(7, 0), False)),
    ("noon", (time(12, 0), True)),
    ("13pm", None),
    ("25:00", None),
])
def test_parse_clock(token, expected):
    assert parse_clock(token) == expected


def test_no_temporal_content(parser):
    result = parser.parse("hello there")
    assert result.found is False
    assert result.spans == []
