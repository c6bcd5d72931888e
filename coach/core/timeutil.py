"""
Coach Assistant - Timezone helpers.

Every user-facing time of day ("14:30") is interpreted in the user's own
IANA timezone. Local dates and times are composed through ZoneInfo and only
then converted to UTC; the server's own timezone is never involved.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _zone_or_none(name: str) -> ZoneInfo | None:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def get_zone(name: str | None) -> ZoneInfo:
    """Return the ZoneInfo for a user's timezone.

    Missing or unknown names fall back to settings.TIMEZONE, then UTC.
    """
    if name:
        zone = _zone_or_none(name)
        if zone is not None:
            return zone
        logger.warning("Unknown timezone %r, using the default", name)

    from coach.config import settings
    return _zone_or_none(settings.TIMEZONE) or ZoneInfo("UTC")


def local_today(tz: ZoneInfo, now: datetime) -> date:
    return now.astimezone(tz).date()


def day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """[start, end) of a local calendar day, as aware datetimes."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def parse_instant(value: str | None) -> datetime | None:
    """Parse a stored ISO timestamp; None when empty or unreadable."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def parse_hhmm(value: str) -> time:
    hours, minutes = value.strip().split(":")
    return time(int(hours), int(minutes))


def local_instant(day: date, hhmm: str, tz: ZoneInfo) -> datetime:
    """Compose a local date and HH:MM in `tz` and return the UTC instant."""
    local = datetime.combine(day, parse_hhmm(hhmm), tzinfo=tz)
    return local.astimezone(timezone.utc)


def next_occurrence(hhmm: str, tz: ZoneInfo, now: datetime) -> datetime:
    """The next instant showing HH:MM in `tz`: today, or tomorrow if already past."""
    today = local_today(tz, now)
    instant = local_instant(today, hhmm, tz)
    if instant <= now:
        instant = local_instant(today + timedelta(days=1), hhmm, tz)
    return instant


def resolve_send_time(value: str, tz: ZoneInfo, now: datetime) -> datetime:
    """Interpret a model-supplied send time.

    Accepts "HH:MM" (user-local, next occurrence) or an ISO-8601 timestamp.
    A naive ISO timestamp is read as user-local time.

    Raises:
        ValueError: if the value is neither.
    """
    value = value.strip()
    if len(value) <= 5 and ":" in value:
        return next_occurrence(value, tz, now)
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt.astimezone(timezone.utc)


def format_local(dt: datetime, tz: ZoneInfo) -> str:
    """Render like "Apr 18, 9:15 AM" in the user's timezone."""
    local = dt.astimezone(tz)
    return f"{local.strftime('%b')} {local.day}, {local.strftime('%I:%M %p').lstrip('0')}"
