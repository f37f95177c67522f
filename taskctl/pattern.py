"""
Crontab-like scheduling patterns.

A pattern is one or more sub-patterns separated by "|". Each sub-pattern has
five whitespace separated fields:

    minute  hour  day-of-month  month  day-of-week

Every field is a comma separated list of elements. An element is "*", a value,
a range "a-b", or any of those followed by "/c" to keep every c-th value. A
range with a > b wraps around the end of the field. Day-of-month accepts "L"
(last day of the month), month and day-of-week accept three letter English
names, and day-of-week accepts 7 as another spelling of Sunday (0).

An instant matches the pattern when it matches any sub-pattern.
"""
import calendar
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Callable, FrozenSet, List, NamedTuple, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from .errors import InvalidSchedulingPatternError

# Stored in the day-of-month set for "L".
LAST_DAY_OF_MONTH = 32

MONTH_ALIASES = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")
DAY_OF_WEEK_ALIASES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")

# Give up looking for a next match after this many days (covers 29 Feb on a Monday).
MAX_SEARCH_DAYS = 366 * 28

Timezone = Union[str, tzinfo, None]


def _parse_int(value: str, lo: int, hi: int) -> int:
    # int() would also take signs, underscores and non-ASCII digits.
    if not (value.isascii() and value.isdigit()):
        raise ValueError("invalid integer value")
    i = int(value)
    if i < lo or i > hi:
        raise ValueError("value out of range")
    return i


def _parse_alias(value: str, aliases: Tuple[str, ...], offset: int) -> int:
    lowered = value.lower()
    if lowered in aliases:
        return aliases.index(lowered) + offset
    raise ValueError(f'invalid alias "{value}"')


def parse_minute(value: str) -> int:
    return _parse_int(value, 0, 59)


def parse_hour(value: str) -> int:
    return _parse_int(value, 0, 23)


def parse_day_of_month(value: str) -> int:
    if value.upper() == "L":
        return LAST_DAY_OF_MONTH
    return _parse_int(value, 1, 31)


def parse_month(value: str) -> int:
    try:
        return _parse_int(value, 1, 12)
    except ValueError:
        return _parse_alias(value, MONTH_ALIASES, 1)


def parse_day_of_week(value: str) -> int:
    try:
        return _parse_int(value, 0, 7) % 7
    except ValueError:
        return _parse_alias(value, DAY_OF_WEEK_ALIASES, 0)


class FieldSpec(NamedTuple):
    name: str
    min_value: int
    max_value: int
    parse: Callable[[str], int]


# Selected by field position.
FIELDS = (
    FieldSpec("minutes", 0, 59, parse_minute),
    FieldSpec("hours", 0, 23, parse_hour),
    FieldSpec("days of month", 1, 31, parse_day_of_month),
    FieldSpec("months", 1, 12, parse_month),
    FieldSpec("days of week", 0, 6, parse_day_of_week),
)


def _parse_range(text: str, spec: FieldSpec) -> List[int]:
    if text == "*":
        return list(range(spec.min_value, spec.max_value + 1))

    parts = text.split("-")
    if len(parts) > 2 or not all(parts):
        raise ValueError("syntax error")

    values = []
    for part in parts:
        try:
            values.append(spec.parse(part))
        except ValueError as e:
            raise ValueError(f'invalid value "{part}": {e}')

    if len(values) == 1:
        return values

    start, end = values
    if start <= end:
        return list(range(start, end + 1))
    return list(range(start, spec.max_value + 1)) + list(range(spec.min_value, end + 1))


def _parse_element(text: str, spec: FieldSpec) -> List[int]:
    parts = text.split("/")
    if len(parts) > 2 or not parts[0]:
        raise ValueError("syntax error")

    values = _parse_range(parts[0], spec)

    if len(parts) == 2:
        if not (parts[1].isascii() and parts[1].isdigit()):
            raise ValueError(f'invalid divisor "{parts[1]}"')
        div = int(parts[1])
        if div < 1:
            raise ValueError(f'non positive divisor "{div}"')
        values = values[::div]

    return values


def parse_field(text: str, spec: FieldSpec) -> FrozenSet[int]:
    values = set()
    for element in text.split(","):
        if not element:
            raise ValueError(f'invalid field "{text}": empty element')
        try:
            values.update(_parse_element(element, spec))
        except ValueError as e:
            raise ValueError(f'invalid field "{text}", invalid element "{element}": {e}')
    if not values:
        raise ValueError(f'invalid field "{text}"')
    return frozenset(values)


class SubPattern(NamedTuple):
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days_of_month: FrozenSet[int]
    months: FrozenSet[int]
    days_of_week: FrozenSet[int]

    def matches_day(self, day: date) -> bool:
        if day.month not in self.months:
            return False
        if day.isoweekday() % 7 not in self.days_of_week:
            return False
        if day.day in self.days_of_month:
            return True
        # Day-of-month "L" depends on the month and on leap years.
        return (
            LAST_DAY_OF_MONTH in self.days_of_month
            and day.day == calendar.monthrange(day.year, day.month)[1]
        )

    def matches(self, local: datetime) -> bool:
        return (
            local.minute in self.minutes
            and local.hour in self.hours
            and self.matches_day(local.date())
        )

def _parse_sub_pattern(pattern: str, text: str) -> SubPattern:
    tokens = text.split()
    if len(tokens) != 5:
        raise InvalidSchedulingPatternError(pattern, f'"{text.strip()}" must have 5 fields')

    sets = []
    for token, spec in zip(tokens, FIELDS):
        try:
            sets.append(parse_field(token, spec))
        except ValueError as e:
            raise InvalidSchedulingPatternError(pattern, str(e), field=spec.name) from e
    return SubPattern(*sets)


def resolve_timezone(tz: Timezone) -> tzinfo:
    if tz is None:
        return timezone.utc
    if isinstance(tz, str):
        return ZoneInfo(tz)
    return tz


def _to_local(instant: Union[datetime, float, int], tz: Timezone) -> datetime:
    zone = resolve_timezone(tz)
    if isinstance(instant, (int, float)):
        return datetime.fromtimestamp(instant, zone)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(zone)


class SchedulingPattern:
    def __init__(self, pattern: str):
        if pattern is None or not pattern.strip():
            raise InvalidSchedulingPatternError(str(pattern), "empty pattern")
        self.pattern = pattern
        self.sub_patterns = [
            _parse_sub_pattern(pattern, text) for text in pattern.split("|")
        ]

    def matches(self, instant: Union[datetime, float, int], tz: Timezone = None) -> bool:
        """
        True if `instant` (aware datetime, or epoch seconds) falls on a minute
        the pattern fires on, evaluated in time zone `tz` (default UTC).
        Naive datetimes are taken as UTC.
        """
        local = _to_local(instant, tz)
        return any(sub.matches(local) for sub in self.sub_patterns)

    def __str__(self):
        return self.pattern

    def __repr__(self):
        return f"SchedulingPattern({self.pattern!r})"


def parse(pattern: str) -> SchedulingPattern:
    return SchedulingPattern(pattern)


def validate(pattern: str) -> bool:
    try:
        SchedulingPattern(pattern)
    except InvalidSchedulingPatternError:
        return False
    return True


class Predictor:
    """Walks forward through the minutes a pattern fires on."""

    def __init__(self, pattern: Union[str, SchedulingPattern],
                 start: Optional[datetime] = None, tz: Timezone = None):
        self.pattern = pattern if isinstance(pattern, SchedulingPattern) else SchedulingPattern(pattern)
        self.tz = resolve_timezone(tz)
        start = start or datetime.now(timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self.time = start.replace(second=0, microsecond=0)

    def _wall_time_instants(self, day: date, hour: int, minute: int) -> List[datetime]:
        """
        UTC instants of a wall time. An ambiguous time (DST fall-back) gives
        both, a skipped one (spring-forward) gives the instant after the gap.
        """
        first = datetime.combine(day, time(hour, minute), tzinfo=self.tz).astimezone(timezone.utc)
        local = first.astimezone(self.tz)
        if (local.hour, local.minute) != (hour, minute):
            return [first]
        second = datetime.combine(day, time(hour, minute, fold=1),
                                  tzinfo=self.tz).astimezone(timezone.utc)
        return [first] if second == first else [first, second]

    def _next_for(self, sub: SubPattern, after: datetime) -> Optional[datetime]:
        day = after.astimezone(self.tz).date()
        for _ in range(MAX_SEARCH_DAYS):
            if sub.matches_day(day):
                found = [
                    instant
                    for hour in sorted(sub.hours)
                    for minute in sorted(sub.minutes)
                    for instant in self._wall_time_instants(day, hour, minute)
                    if instant >= after
                ]
                if found:
                    return min(found)
            day += timedelta(days=1)
        return None

    def next_matching_time(self) -> datetime:
        """Next firing minute strictly after the current position, as aware UTC."""
        after = self.time + timedelta(minutes=1)
        found = [t for t in (self._next_for(sub, after) for sub in self.pattern.sub_patterns) if t]
        if not found:
            raise ValueError(f'The pattern "{self.pattern}" never matches')
        self.time = min(found)
        return self.time
