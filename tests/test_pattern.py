from datetime import datetime, timedelta, timezone

import pytest

from taskctl.errors import InvalidSchedulingPatternError
from taskctl.pattern import Predictor, SchedulingPattern, parse, validate


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def matching_minutes(pattern, hour=13, day=(2024, 5, 17)):
    p = parse(pattern)
    return [m for m in range(60) if p.matches(utc(*day, hour, m))]


# ---------- Matching ----------
def test_every_fifth_minute():
    assert matching_minutes("*/5 * * * *") == list(range(0, 60, 5))
    # Same answer for any hour, day and weekday.
    assert matching_minutes("*/5 * * * *", hour=0, day=(2023, 12, 31)) == list(range(0, 60, 5))


def test_or_of_sub_patterns():
    p = parse("0 5 * * *|8 10 * * *")
    assert p.matches(utc(2024, 5, 17, 5, 0))
    assert p.matches(utc(2024, 5, 17, 10, 8))
    assert [m for m in range(60) if p.matches(utc(2024, 5, 17, 5, m))] == [0]
    assert [m for m in range(60) if p.matches(utc(2024, 5, 17, 10, m))] == [8]
    assert not p.matches(utc(2024, 5, 17, 5, 8))


def test_last_day_of_month():
    p = parse("0 0 L * *")
    assert p.matches(utc(2024, 2, 29, 0, 0))
    assert p.matches(utc(2023, 2, 28, 0, 0))
    assert not p.matches(utc(2024, 2, 28, 0, 0))
    assert p.matches(utc(2024, 4, 30, 0, 0))
    assert not p.matches(utc(2024, 5, 30, 0, 0))


def test_day_of_week_seven_is_sunday():
    sunday, monday = utc(2024, 3, 3, 0, 0), utc(2024, 3, 4, 0, 0)
    for pattern in ("0 0 * * 7", "0 0 * * 0", "0 0 * * sun"):
        assert parse(pattern).matches(sunday), pattern
        assert not parse(pattern).matches(monday), pattern
    assert parse("0 0 * * 7").sub_patterns[0].days_of_week == frozenset({0})


def test_descending_range_wraps():
    p = parse("0 23-1 * * *")
    assert p.sub_patterns[0].hours == frozenset({23, 0, 1})
    assert p.matches(utc(2024, 1, 1, 0, 0))
    assert not p.matches(utc(2024, 1, 1, 2, 0))


def test_range_with_step_includes_end():
    assert parse("10-20/5 * * * *").sub_patterns[0].minutes == frozenset({10, 15, 20})
    assert parse("*/20 * * * *").sub_patterns[0].minutes == frozenset({0, 20, 40})


def test_aliases_are_case_insensitive():
    p = parse("0 12 * JAN,feb Mon-wed")
    sub = p.sub_patterns[0]
    assert sub.months == frozenset({1, 2})
    assert sub.days_of_week == frozenset({1, 2, 3})
    assert p.matches(utc(2024, 1, 1, 12, 0))       # Monday
    assert not p.matches(utc(2024, 1, 4, 12, 0))   # Thursday
    assert not p.matches(utc(2024, 3, 4, 12, 0))   # March


def test_matches_in_time_zone():
    plus_two = timezone(timedelta(hours=2))
    p = parse("0 9 * * *")
    assert p.matches(utc(2024, 7, 1, 7, 0), plus_two)
    assert not p.matches(utc(2024, 7, 1, 9, 0), plus_two)


def test_matches_epoch_seconds():
    assert parse("30 12 * * *").matches(utc(2024, 1, 2, 12, 30).timestamp())


# ---------- Validation ----------
@pytest.mark.parametrize("pattern, field", [
    ("60 * * * *", "minutes"),
    ("* 24 * * *", "hours"),
    ("* * 0 * *", "days of month"),
    ("* * * 13 *", "months"),
    ("* * * * 8", "days of week"),
    ("*/0 * * * *", "minutes"),
    ("x * * * *", "minutes"),
    ("1,,2 * * * *", "minutes"),
    ("* * * foo *", "months"),
    ("+5 * * * *", "minutes"),
    ("1_0 * * * *", "minutes"),
    ("\u0661 * * * *", "minutes"),
    ("* * * * -1", "days of week"),
    ("*/+2 * * * *", "minutes"),
])
def test_invalid_field_names_the_field(pattern, field):
    with pytest.raises(InvalidSchedulingPatternError) as e:
        parse(pattern)
    assert e.value.field == field
    assert field in str(e.value)


@pytest.mark.parametrize("pattern", ["", "   ", "* * * *", "* * * * * *", "* * * * *|"])
def test_invalid_shape(pattern):
    assert not validate(pattern)


def test_validate_accepts_good_patterns():
    assert validate("0 0 L * *")
    assert validate("*/15 9-17 * * mon-fri|0 12 * * sat")
    assert str(SchedulingPattern("0 0 * * *")) == "0 0 * * *"


# ---------- Predictor ----------
def test_predictor_walks_forward():
    p = Predictor("*/15 * * * *", utc(2024, 1, 1, 0, 0))
    assert p.next_matching_time() == utc(2024, 1, 1, 0, 15)
    assert p.next_matching_time() == utc(2024, 1, 1, 0, 30)


def test_predictor_is_strictly_after_start():
    p = Predictor("0 0 * * *", utc(2024, 1, 1, 0, 0, 30))
    assert p.next_matching_time() == utc(2024, 1, 2, 0, 0)


def test_predictor_finds_leap_day_and_last_day():
    assert Predictor("0 0 29 2 *", utc(2023, 3, 1)).next_matching_time() == utc(2024, 2, 29)
    assert Predictor("0 0 L * *", utc(2024, 2, 10)).next_matching_time() == utc(2024, 2, 29)


def test_predictor_picks_earliest_sub_pattern():
    p = Predictor("0 12 * * *|30 6 * * *", utc(2024, 1, 1, 7, 0))
    assert p.next_matching_time() == utc(2024, 1, 1, 12, 0)
    assert p.next_matching_time() == utc(2024, 1, 2, 6, 30)


def test_predictor_in_time_zone():
    minus_five = timezone(timedelta(hours=-5))
    p = Predictor("0 9 * * *", utc(2024, 1, 1, 0, 0), minus_five)
    assert p.next_matching_time() == utc(2024, 1, 1, 14, 0)


def test_predictor_pattern_that_never_matches():
    with pytest.raises(ValueError):
        Predictor("0 0 30 2 *", utc(2024, 1, 1)).next_matching_time()


def test_predictor_repeated_hour_after_dst_ends():
    # New York falls back from 02:00 EDT to 01:00 EST at 06:00Z on 2024-11-03.
    p = Predictor("*/15 * * * *", utc(2024, 11, 3, 6, 20), "America/New_York")
    assert p.next_matching_time() == utc(2024, 11, 3, 6, 30)


def test_predictor_walks_through_both_passes_of_the_repeated_hour():
    p = Predictor("*/15 * * * *", utc(2024, 11, 3, 5, 40), "America/New_York")
    assert p.next_matching_time() == utc(2024, 11, 3, 5, 45)
    assert p.next_matching_time() == utc(2024, 11, 3, 6, 0)
    assert p.next_matching_time() == utc(2024, 11, 3, 6, 15)


def test_predictor_skipped_wall_time_fires_after_the_gap():
    # 02:30 does not exist in New York on 2024-03-10; it runs at 03:30 EDT.
    p = Predictor("30 2 * * *", utc(2024, 3, 10, 0, 0), "America/New_York")
    assert p.next_matching_time() == utc(2024, 3, 10, 7, 30)
    assert p.next_matching_time() == utc(2024, 3, 11, 6, 30)
