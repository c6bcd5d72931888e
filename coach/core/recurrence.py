"""
Coach Assistant - Recurrence patterns.

A small closed grammar describing which calendar dates a task is active on:

    none                → one-off task, handled by the daily reminder path
    daily               → every day
    weekly:1,3,5        → ISO weekdays (1=Mon .. 7=Sun)
    monthly:15          → day of month (clamped to the month's last day)

Patterns are parsed once when a task is written; anything outside the
grammar raises RecurrenceError right there instead of being silently
treated as "daily" later.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class RecurrenceError(ValueError):
    """Raised when a recurrence pattern or time of day is malformed."""


class RecurrenceKind(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class RecurrencePattern:
    kind: RecurrenceKind
    weekdays: tuple[int, ...] = ()     # ISO weekdays, only for WEEKLY
    day_of_month: int | None = None    # only for MONTHLY

    @classmethod
    def parse(cls, raw: str | None) -> RecurrencePattern:
        """Parse a pattern string into its structured form.

        Raises:
            RecurrenceError: if the string is not part of the grammar.
        """
        text = (raw or "").strip().lower()
        if text in ("", "none"):
            return cls(RecurrenceKind.NONE)
        if text == "daily":
            return cls(RecurrenceKind.DAILY)

        kind, sep, params = text.partition(":")
        if not sep or not params.strip():
            raise RecurrenceError(f"Unrecognised recurrence pattern: {raw!r}")

        if kind == "weekly":
            days: set[int] = set()
            for part in params.split(","):
                part = part.strip()
                if not part.isdigit() or not 1 <= int(part) <= 7:
                    raise RecurrenceError(
                        f"Weekly pattern needs ISO day numbers 1-7, got {part!r}"
                    )
                days.add(int(part))
            return cls(RecurrenceKind.WEEKLY, weekdays=tuple(sorted(days)))

        if kind == "monthly":
            params = params.strip()
            if not params.isdigit() or not 1 <= int(params) <= 31:
                raise RecurrenceError(
                    f"Monthly pattern needs a day of month 1-31, got {params!r}"
                )
            return cls(RecurrenceKind.MONTHLY, day_of_month=int(params))

        raise RecurrenceError(f"Unrecognised recurrence pattern: {raw!r}")

    def canonical(self) -> str:
        if self.kind is RecurrenceKind.WEEKLY:
            return "weekly:" + ",".join(str(d) for d in self.weekdays)
        if self.kind is RecurrenceKind.MONTHLY:
            return f"monthly:{self.day_of_month}"
        return self.kind.value

    @property
    def is_recurring(self) -> bool:
        return self.kind is not RecurrenceKind.NONE

    def occurs_on(self, day: date) -> bool:
        if self.kind is RecurrenceKind.NONE:
            return False
        if self.kind is RecurrenceKind.DAILY:
            return True
        if self.kind is RecurrenceKind.WEEKLY:
            return day.isoweekday() in self.weekdays
        last_day = calendar.monthrange(day.year, day.month)[1]
        return day.day == min(self.day_of_month, last_day)


def normalize_pattern(raw: str | None) -> str | None:
    """Validate a pattern for storage. Returns None for one-off tasks."""
    pattern = RecurrencePattern.parse(raw)
    return pattern.canonical() if pattern.is_recurring else None


def does_task_recur_on_date(pattern: str | RecurrencePattern | None, day: date) -> bool:
    """True when a task with this pattern is active on the given local date."""
    if not isinstance(pattern, RecurrencePattern):
        pattern = RecurrencePattern.parse(pattern)
    return pattern.occurs_on(day)


def validate_time_of_day(value: str | None) -> str | None:
    """Check a 24-hour HH:MM string. None passes through."""
    if value is None:
        return None
    value = value.strip()
    if not _TIME_RE.match(value):
        raise RecurrenceError(f"Time must be HH:MM in 24-hour format, got {value!r}")
    return value
