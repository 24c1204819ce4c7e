"""
Temporal expression parsing for slot extraction.

Detects date, time, range, duration and recurrence phrases with regexes and
resolves them against an anchor ``now``. Relative day phrases (today,
tomorrow, weekdays, "in N days") are resolved directly; absolute calendar
dates ("March 5th", "10/21/2026") are handed to dateparser.

Resolution rules:
    - A day without a time is scheduled at 12:00 ("tonight" at 20:00).
    - A time without a day that has already passed today rolls to tomorrow.
    - In "3-4pm" the start inherits the end's meridiem.
    - A bare "at H" reads 1-7 as pm, 8-11 as am and 12 as noon; 0 and
      13-23 are taken as a 24-hour clock.
"""

import re
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable, List, Optional, Tuple

import dateparser

logger = logging.getLogger(__name__)

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
MONTH_NAMES = [
    "january", "february", "march", "april", "may", "june", "july",
    "august", "september", "october", "november", "december",
]
_WEEKDAY_ALT = "|".join(WEEKDAYS)
_MONTH_ALT = (
    r"jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?|"
    r"sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?"
)

NUMBER_WORDS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "fifteen": 15,
    "twenty": 20, "thirty": 30, "forty-five": 45, "ninety": 90,
}
_NUMBER_ALT = r"\d+(?:\.\d+)?|" + "|".join(sorted(NUMBER_WORDS, key=len, reverse=True))

_CLOCK = r"\d{1,2}(?::\d{2})?\s*(?:a\.?m\.?|p\.?m\.?)|\d{1,2}:\d{2}|\d{1,2}\s*o'?clock|noon|midnight"
_RANGE_START = r"\d{1,2}(?::\d{2})?\s*(?:a\.?m\.?|p\.?m\.?)?|noon|midnight"

RANGE_PATTERN = re.compile(
    rf"(?:\b(?:at|from|between)\s+)?\b(?P<start>{_RANGE_START})\s*(?:-|–|to|until|till|and)\s*(?P<end>{_CLOCK})(?!\w)",
    re.IGNORECASE,
)
TIME_PATTERN = re.compile(rf"(?:\bat\s+)?\b(?P<time>{_CLOCK})(?!\w)", re.IGNORECASE)
# "at 10": an hour with no minutes or meridiem
BARE_HOUR_PATTERN = re.compile(
    r"\bat\s+(?P<hour>\d{1,2})(?![\d:/]|\.\d|\s*(?:minutes?|mins?|hours?|hrs?|%|percent)\b)\b",
    re.IGNORECASE,
)

# (pattern, day offset or None, default time) in priority order
_DAY_PHRASES: List[Tuple[re.Pattern, Optional[int], Optional[time]]] = [
    (re.compile(r"\b(?:the\s+)?day\s+after\s+tomorrow\b", re.IGNORECASE), 2, None),
    (re.compile(r"\b(?:tomorrow|tmrw|tmr)\s+(?:morning)\b", re.IGNORECASE), 1, time(9, 0)),
    (re.compile(r"\b(?:tomorrow|tmrw|tmr)\s+(?:afternoon)\b", re.IGNORECASE), 1, time(15, 0)),
    (re.compile(r"\b(?:tomorrow|tmrw|tmr)\s+(?:evening|night)\b", re.IGNORECASE), 1, time(20, 0)),
    (re.compile(r"\b(?:tomorrow|tmrw|tmr)\b", re.IGNORECASE), 1, None),
    (re.compile(r"\btonight\b", re.IGNORECASE), 0, time(20, 0)),
    (re.compile(r"\bthis\s+morning\b", re.IGNORECASE), 0, time(9, 0)),
    (re.compile(r"\bthis\s+afternoon\b", re.IGNORECASE), 0, time(15, 0)),
    (re.compile(r"\bthis\s+evening\b", re.IGNORECASE), 0, time(18, 0)),
    (re.compile(r"\btoday\b", re.IGNORECASE), 0, None),
    (re.compile(r"\bnext\s+week\b", re.IGNORECASE), 7, None),
]
WEEKDAY_PATTERN = re.compile(rf"\b(?:(?:next|this|on|coming)\s+)?(?P<day>{_WEEKDAY_ALT})s?\b", re.IGNORECASE)
RELATIVE_PATTERN = re.compile(
    rf"\bin\s+(?P<amount>{_NUMBER_ALT})\s+(?P<unit>minutes?|mins?|hours?|hrs?|days?|weeks?)\b",
    re.IGNORECASE,
)
ABSOLUTE_DATE_PATTERNS = [
    re.compile(rf"\b(?:on\s+)?(?:{_MONTH_ALT})\.?\s+\d{{1,2}}(?:st|nd|rd|th)?(?:,?\s+\d{{4}})?\b", re.IGNORECASE),
    re.compile(rf"\b(?:on\s+)?(?:the\s+)?\d{{1,2}}(?:st|nd|rd|th)?\s+(?:of\s+)?(?:{_MONTH_ALT})(?:,?\s+\d{{4}})?\b", re.IGNORECASE),
    re.compile(r"\b(?:on\s+)?\d{4}-\d{2}-\d{2}\b"),
    re.compile(r"\b(?:on\s+)?\d{1,2}/\d{1,2}(?:/\d{2,4})?\b"),
]

DURATION_PATTERNS = [
    re.compile(
        rf"\bfor\s+(?:an?\s+)?(?P<amount>{_NUMBER_ALT}|half\s+an)\s*(?P<unit>hours?|hrs?|h|minutes?|mins?|m)\b",
        re.IGNORECASE,
    ),
    re.compile(r"(?<!\bin )\b(?P<amount>\d+(?:\.\d+)?)[\s-](?P<unit>hours?|hrs?|minutes?|mins?)\b(?!\s+(?:from|ago|before|after))", re.IGNORECASE),
]

RECURRENCE_TABLE: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\bevery\s+(?:week\s*day|work\s*day)s?\b|\bon\s+weekdays\b|\bweekdays\b", re.IGNORECASE), "weekdays"),
    (re.compile(r"\bevery\s+weekends?\b|\bon\s+weekends\b|\bweekends\b", re.IGNORECASE), "weekends"),
    (re.compile(r"\bevery\s+day\b|\beach\s+day\b|\bdaily\b|\bevery\s+morning\b|\bevery\s+night\b", re.IGNORECASE), "daily"),
    (re.compile(r"\bevery\s+week\b|\bweekly\b", re.IGNORECASE), "weekly"),
    (re.compile(r"\bevery\s+month\b|\bmonthly\b", re.IGNORECASE), "monthly"),
]
WEEKLY_DAY_PATTERN = re.compile(rf"\bevery\s+(?P<day>{_WEEKDAY_ALT})s?\b", re.IGNORECASE)

DATEPARSER_SETTINGS = {
    "PREFER_DATES_FROM": "future",
    "DATE_ORDER": "MDY",
    "RETURN_AS_TIMEZONE_AWARE": False,
}


@dataclass
class TemporalResult:
    """
    Everything the temporal stage found in one utterance.

    ``spans`` holds (start, end) character offsets of every matched phrase so
    that title extraction can cut them out of the text.
    """

    point: Optional[datetime] = None
    range_start: Optional[datetime] = None
    range_end: Optional[datetime] = None
    duration_min: Optional[int] = None
    explicit_duration: bool = False
    recurrence: Optional[str] = None
    spans: List[Tuple[int, int]] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return any(
            v is not None
            for v in (self.point, self.range_start, self.duration_min, self.recurrence)
        )


def _number(value: str) -> float:
    value = value.lower().strip()
    if value in NUMBER_WORDS:
        return float(NUMBER_WORDS[value])
    if value.startswith("half"):
        return 0.5
    return float(value)


def parse_clock(token: str, default_meridiem: Optional[str] = None) -> Optional[Tuple[time, bool]]:
    """
    Parse a clock token into (time, had_meridiem).

    Returns None for impossible times such as "13pm" or "25:00".
    """
    cleaned = token.lower().replace(".", "").strip()
    if cleaned == "noon":
        return time(12, 0), True
    if cleaned == "midnight":
        return time(0, 0), True

    match = re.match(r"^(\d{1,2})(?::(\d{2}))?\s*(am|pm|o'?clock)?$", cleaned)
    if not match:
        return None

    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = match.group(3)
    if meridiem and "clock" in meridiem:
        meridiem = None

    had_meridiem = meridiem is not None
    meridiem = meridiem or default_meridiem
    if meridiem in ("am", "pm"):
        if not 1 <= hour <= 12:
            return None
        hour = hour % 12 + (12 if meridiem == "pm" else 0)

    if hour > 23 or minute > 59:
        return None
    return time(hour, minute), had_meridiem


def bare_hour_time(hour: int) -> Optional[time]:
    """Resolve the hour of an "at H" phrase using working-hours meridiem."""
    if hour > 23:
        return None
    if 1 <= hour <= 7:
        return time(hour + 12, 0)
    return time(hour, 0)


def _meridiem_of(token: str) -> Optional[str]:
    cleaned = token.lower().replace(".", "")
    if "pm" in cleaned or cleaned.strip() == "noon":
        return "pm"
    if "am" in cleaned or cleaned.strip() == "midnight":
        return "am"
    return None


def parse_duration(text: str) -> Optional[Tuple[int, Tuple[int, int]]]:
    """Return (minutes, span) for an explicit duration phrase such as "for 2 hours"."""
    for pattern in DURATION_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        try:
            amount = _number(match.group("amount"))
        except ValueError:
            continue
        unit = match.group("unit").lower()
        minutes = amount * 60 if unit.startswith("h") else amount
        if minutes > 0:
            return int(round(minutes)), match.span()
    return None


def parse_recurrence(text: str) -> Optional[Tuple[str, Tuple[int, int]]]:
    """Map "every <day|daily|weekly|monthly|weekday(s)|weekend>" phrases to a tag."""
    weekly = WEEKLY_DAY_PATTERN.search(text)
    for pattern, tag in RECURRENCE_TABLE:
        match = pattern.search(text)
        if match:
            return tag, match.span()
    if weekly:
        return f"weekly:{weekly.group('day').lower()}", weekly.span()
    return None


class TemporalParser:
    """
    Resolve temporal phrases relative to an anchor.

    Args:
        clock: Returns the anchor ``now`` (naive local time); injectable for tests
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self._clock = clock

    def parse(self, text: str, now: Optional[datetime] = None) -> TemporalResult:
        now = (now or self._clock()).replace(microsecond=0)
        result = TemporalResult()
        if not text:
            return result

        recurrence = parse_recurrence(text)
        if recurrence:
            result.recurrence, span = recurrence
            result.spans.append(span)

        day, day_default_time, relative_moment = self._resolve_day(text, now, result.spans)

        range_match = RANGE_PATTERN.search(text)
        times = self._resolve_range(range_match) if range_match else None
        if times:
            result.spans.append(range_match.span())
            start_time, end_time = times
            anchor_day = day or now.date()
            start = datetime.combine(anchor_day, start_time)
            if day is None and start < now:
                start += timedelta(days=1)
            end = datetime.combine(start.date(), end_time)
            if end <= start:
                end += timedelta(days=1)
            result.range_start, result.range_end = start, end
            result.point = start
            result.duration_min = int((end - start).total_seconds() // 60)
        else:
            clock_time = None
            time_match = TIME_PATTERN.search(text)
            if time_match:
                parsed = parse_clock(time_match.group("time"))
                if parsed:
                    clock_time = parsed[0]
                    result.spans.append(time_match.span())
            else:
                bare_match = BARE_HOUR_PATTERN.search(text)
                if bare_match:
                    clock_time = bare_hour_time(int(bare_match.group("hour")))
                    if clock_time is not None:
                        result.spans.append(bare_match.span())

            if clock_time is not None:
                moment = datetime.combine(day or now.date(), clock_time)
                if day is None and moment < now:
                    moment += timedelta(days=1)
                result.point = moment
            elif relative_moment is not None:
                result.point = relative_moment
            elif day is not None:
                result.point = datetime.combine(day, day_default_time or time(12, 0))

        duration = parse_duration(text)
        if duration:
            result.duration_min, span = duration
            result.explicit_duration = True
            result.spans.append(span)
            if result.range_start is not None:
                result.range_end = result.range_start + timedelta(minutes=result.duration_min)

        return result

    def _resolve_day(
        self, text: str, now: datetime, spans: List[Tuple[int, int]]
    ) -> Tuple[Optional[date], Optional[time], Optional[datetime]]:
        """Return (day, default time for that day, exact relative moment)."""
        for pattern, offset, default_time in _DAY_PHRASES:
            match = pattern.search(text)
            if match:
                spans.append(match.span())
                return now.date() + timedelta(days=offset), default_time, None

        relative = RELATIVE_PATTERN.search(text)
        if relative:
            try:
                amount = _number(relative.group("amount"))
            except ValueError:
                amount = None
            if amount is not None:
                spans.append(relative.span())
                unit = relative.group("unit").lower()
                if unit.startswith("min"):
                    return None, None, now + timedelta(minutes=amount)
                if unit.startswith("h"):
                    return None, None, now + timedelta(hours=amount)
                days = amount * 7 if unit.startswith("week") else amount
                return now.date() + timedelta(days=int(days)), None, None

        weekday = WEEKDAY_PATTERN.search(text)
        if weekday:
            spans.append(weekday.span())
            target = WEEKDAYS.index(weekday.group("day").lower())
            phrase = weekday.group(0).lower()
            ahead = (target - now.weekday()) % 7
            if ahead == 0 and not phrase.startswith("this"):
                ahead = 7
            return now.date() + timedelta(days=ahead), None, None

        for pattern in ABSOLUTE_DATE_PATTERNS:
            match = pattern.search(text)
            if not match:
                continue
            phrase = re.sub(r"^(?:on\s+)?(?:the\s+)?", "", match.group(0), flags=re.IGNORECASE)
            parsed = dateparser.parse(phrase, settings={**DATEPARSER_SETTINGS, "RELATIVE_BASE": now})
            if parsed is None:
                logger.debug(f"dateparser could not resolve {phrase!r}")
                continue
            spans.append(match.span())
            return parsed.date(), None, None

        return None, None, None

    @staticmethod
    def _resolve_range(match: re.Match) -> Optional[Tuple[time, time]]:
        end_token = match.group("end")
        end = parse_clock(end_token)
        if end is None:
            return None
        end_time = end[0]

        start_token = match.group("start")
        start = parse_clock(start_token)
        if start is None:
            return None
        start_time, start_had_meridiem = start

        if not start_had_meridiem:
            inherited = parse_clock(start_token, default_meridiem=_meridiem_of(end_token))
            if inherited is not None:
                start_time = inherited[0]
                # "11-1pm" means 11am to 1pm
                if start_time > end_time:
                    am = parse_clock(start_token, default_meridiem="am")
                    if am is not None:
                        start_time = am[0]
        return start_time, end_time
