"""Tests for coach.core.recurrence - the recurrence pattern grammar."""

import pytest
from datetime import date, timedelta

from coach.core.recurrence import (
    RecurrenceError,
    RecurrenceKind,
    RecurrencePattern,
    does_task_recur_on_date,
    normalize_pattern,
    validate_time_of_day,
)

# Monday 2025-04-14 .. Sunday 2025-04-20
WEEK = [date(2025, 4, 14) + timedelta(days=i) for i in range(7)]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParse:
    def test_none_and_empty_are_one_off(self):
        assert RecurrencePattern.parse(None).kind is RecurrenceKind.NONE
        assert RecurrencePattern.parse("").kind is RecurrenceKind.NONE
        assert RecurrencePattern.parse("none").kind is RecurrenceKind.NONE

    def test_daily(self):
        assert RecurrencePattern.parse("Daily").kind is RecurrenceKind.DAILY

    def test_weekly_sorted_and_deduplicated(self):
        pattern = RecurrencePattern.parse("weekly:5, 1,3,1")
        assert pattern.kind is RecurrenceKind.WEEKLY
        assert pattern.weekdays == (1, 3, 5)
        assert pattern.canonical() == "weekly:1,3,5"

    def test_monthly(self):
        pattern = RecurrencePattern.parse("monthly:15")
        assert pattern.day_of_month == 15
        assert pattern.canonical() == "monthly:15"

    @pytest.mark.parametrize("raw", [
        "weekly:0",
        "weekly:8",
        "weekly:mon",
        "weekly:",
        "monthly:0",
        "monthly:32",
        "yearly:1",
        "every tuesday",
    ])
    def test_invalid_patterns_raise(self, raw):
        with pytest.raises(RecurrenceError):
            RecurrencePattern.parse(raw)

    def test_recurrence_error_is_value_error(self):
        with pytest.raises(ValueError):
            RecurrencePattern.parse("fortnightly")


# ---------------------------------------------------------------------------
# Matching dates
# ---------------------------------------------------------------------------


class TestOccursOn:
    def test_weekly_mon_wed_fri_over_one_week(self):
        hits = [d for d in WEEK if does_task_recur_on_date("weekly:1,3,5", d)]
        assert hits == [date(2025, 4, 14), date(2025, 4, 16), date(2025, 4, 18)]

    def test_daily_matches_every_day(self):
        assert all(does_task_recur_on_date("daily", d) for d in WEEK)

    def test_none_matches_nothing(self):
        assert not any(does_task_recur_on_date(None, d) for d in WEEK)

    def test_monthly_exact_day(self):
        assert does_task_recur_on_date("monthly:15", date(2025, 4, 15))
        assert not does_task_recur_on_date("monthly:15", date(2025, 4, 16))

    def test_monthly_clamps_to_last_day(self):
        assert does_task_recur_on_date("monthly:31", date(2025, 2, 28))
        assert does_task_recur_on_date("monthly:31", date(2025, 4, 30))
        assert not does_task_recur_on_date("monthly:31", date(2025, 4, 29))

    def test_monthly_clamp_leap_year(self):
        assert does_task_recur_on_date("monthly:30", date(2024, 2, 29))
        assert not does_task_recur_on_date("monthly:30", date(2024, 2, 28))

    def test_accepts_parsed_pattern(self):
        pattern = RecurrencePattern.parse("weekly:7")
        assert does_task_recur_on_date(pattern, date(2025, 4, 20))

    def test_invalid_pattern_raises_instead_of_matching(self):
        with pytest.raises(RecurrenceError):
            does_task_recur_on_date("sometimes", date(2025, 4, 14))


# ---------------------------------------------------------------------------
# Storage helpers
# ---------------------------------------------------------------------------


class TestNormalize:
    def test_one_off_normalizes_to_none(self):
        assert normalize_pattern("none") is None
        assert normalize_pattern(None) is None

    def test_recurring_is_canonical(self):
        assert normalize_pattern(" WEEKLY:3,1 ") == "weekly:1,3"


class TestValidateTimeOfDay:
    def test_valid_times(self):
        assert validate_time_of_day("00:00") == "00:00"
        assert validate_time_of_day(" 23:59 ") == "23:59"

    def test_none_passes_through(self):
        assert validate_time_of_day(None) is None

    @pytest.mark.parametrize("value", ["24:00", "9:30", "12:60", "noon", "12:3"])
    def test_invalid_times(self, value):
        with pytest.raises(RecurrenceError):
            validate_time_of_day(value)
