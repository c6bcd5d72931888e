"""
Coach Assistant - Schedule Parser.

When the user confirms a plan, the model writes it out after the
"The final schedule is as follows:" marker, one line per item:

    - 09:30 AM: Draft report (Task ID: 42)
    - 10:00 AM - 11:30 AM: Deep work
    - 14:00: Reminder - stretch

Timed lines become schedule items; lines that talk about reminders,
check-ins or follow-ups become notifications. A trailing "Notifications:"
section is read the same way. Items are then linked back to the user's
tasks so the schedule knows which task each slot is for.

The ScheduleService at the bottom stores a parsed schedule as a draft and
confirms it, which queues its notifications.
"""

from __future__ import annotations

import logging
import re
from datetime import date, timedelta
from typing import TYPE_CHECKING

from pydantic import BaseModel

from coach.core.interpreter import FINAL_SCHEDULE_MARKER
from coach.core.reminders import task_slot_date
from coach.core.timeutil import Clock, get_zone, local_instant, local_today, utcnow

if TYPE_CHECKING:
    from coach.data.db import DailyScheduleDB, ScheduledMessageDB, TaskDB
    from coach.data.models import DailySchedule, ScheduledMessage, Subtask, Task, User

logger = logging.getLogger(__name__)

_TIME = r"\d{1,2}:\d{2}(?:\s*[AaPp][Mm]\b)?"
_TIME_TOKEN = re.compile(rf"({_TIME})(?:\s*[-–]\s*({_TIME}))?")
_BULLET = re.compile(r"^[•\-–—*]\s*")
_TASK_REF = re.compile(r"\(\s*Task ID:\s*(\d+)\s*\)", re.IGNORECASE)
_SUBTASK_REF = re.compile(r"\(\s*Subtask ID:\s*(\d+)\s*\)", re.IGNORECASE)
_NOTIFICATION_WORDS = re.compile(
    r"\b(reminder|check[- ]?in|follow[- ]?up|notification|alert)s?\b", re.IGNORECASE,
)
_SECTION_HEADER = re.compile(
    r"^\**\s*(notifications?|reminders|follow[- ]?ups)\s*:?\s*\**\s*$", re.IGNORECASE,
)


class ScheduleError(Exception):
    """Raised on an invalid schedule state transition."""


# ---------------------------------------------------------------------------
# Parsed contract
# ---------------------------------------------------------------------------


class ParsedScheduleItem(BaseModel):
    title: str
    start_time: str                # HH:MM, 24-hour
    end_time: str | None = None
    description: str = ""
    task_id: int | None = None
    subtask_id: int | None = None


class ParsedNotification(BaseModel):
    title: str
    start_time: str                # HH:MM, 24-hour
    notification_type: str         # reminder | check_in | follow_up | notification
    content: str
    task_id: int | None = None


class ParsedSchedule(BaseModel):
    schedule_items: list[ParsedScheduleItem] = []
    notification_items: list[ParsedNotification] = []


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def to_24h(value: str) -> str | None:
    """Normalize "9:30", "9:30 AM", "12:05pm" to "HH:MM". None if invalid."""
    match = re.fullmatch(r"(\d{1,2}):(\d{2})\s*([AaPp][Mm])?", value.strip())
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    suffix = (match.group(3) or "").lower()
    if suffix:
        if not 1 <= hours <= 12:
            return None
        if suffix == "pm" and hours != 12:
            hours += 12
        elif suffix == "am" and hours == 12:
            hours = 0
    if hours > 23 or minutes > 59:
        return None
    return f"{hours:02d}:{minutes:02d}"


def _notification_type(title: str) -> str:
    lowered = title.lower()
    if "reminder" in lowered:
        return "reminder"
    if re.search(r"check[- ]?in", lowered):
        return "check_in"
    if re.search(r"follow[- ]?up", lowered):
        return "follow_up"
    return "notification"


def _parse_line(line: str, force_notification: bool = False):
    """Parse one timed line into an item or a notification. None if untimed."""
    text = _BULLET.sub("", line.strip())
    match = _TIME_TOKEN.search(text)
    if not match:
        return None

    start = to_24h(match.group(1))
    end = to_24h(match.group(2)) if match.group(2) else None
    if start is None:
        logger.debug("Skipping schedule line with invalid time: %s", line)
        return None

    title = (text[:match.start()] + text[match.end():]).strip()
    title = re.sub(r"^[:\-–—]\s*", "", title)

    task_id = subtask_id = None
    subtask_ref = _SUBTASK_REF.search(title)
    if subtask_ref:
        subtask_id = int(subtask_ref.group(1))
        title = _SUBTASK_REF.sub("", title)
    task_ref = _TASK_REF.search(title)
    if task_ref:
        task_id = int(task_ref.group(1))
        title = _TASK_REF.sub("", title)
    title = re.sub(r"\s{2,}", " ", title).strip().strip(":").strip()

    if force_notification or _NOTIFICATION_WORDS.search(title):
        head, sep, tail = title.partition(" - ")
        head = head.strip() or title
        return ParsedNotification(
            title=head,
            start_time=start,
            notification_type=_notification_type(head if sep else title),
            content=tail.strip() if sep and tail.strip() else f"{head} for your scheduled activity",
            task_id=task_id,
        )

    return ParsedScheduleItem(
        title=title,
        start_time=start,
        end_time=end,
        task_id=task_id,
        subtask_id=subtask_id,
    )


def parse_schedule(text: str) -> ParsedSchedule | None:
    """Extract schedule items and notifications after the final-schedule marker.

    Returns None when the marker is absent.
    """
    if not text or FINAL_SCHEDULE_MARKER not in text:
        return None

    remainder = text.split(FINAL_SCHEDULE_MARKER, 1)[1]
    parsed = ParsedSchedule()
    in_notifications = False

    for raw_line in remainder.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if _SECTION_HEADER.match(line):
            in_notifications = True
            continue
        if in_notifications and not _BULLET.match(line):
            continue

        entry = _parse_line(line, force_notification=in_notifications)
        if isinstance(entry, ParsedNotification):
            parsed.notification_items.append(entry)
        elif isinstance(entry, ParsedScheduleItem):
            parsed.schedule_items.append(entry)

    logger.info(
        "Parsed schedule: %d item(s), %d notification(s)",
        len(parsed.schedule_items), len(parsed.notification_items),
    )
    return parsed


# ---------------------------------------------------------------------------
# Task matching
# ---------------------------------------------------------------------------


def _match_strategies(item: ParsedScheduleItem):
    title = item.title.lower().strip()
    yield lambda candidate: candidate.title.lower().strip() == title
    yield lambda candidate: bool(title) and (
        candidate.title.lower() in title or title in candidate.title.lower()
    )
    yield lambda candidate: (
        candidate.scheduled_time is not None and candidate.scheduled_time == item.start_time
    )


def match_items_with_tasks(
    items: list[ParsedScheduleItem],
    tasks: list[Task],
    subtasks: list[Subtask],
) -> list[ParsedScheduleItem]:
    """Recover task/subtask links for parsed items.

    Explicit references survive only if they name a known task or subtask.
    Otherwise the first match wins, trying exact title, then substring, then
    equal scheduled time; subtasks are tried before tasks at each step.
    References that match nothing are dropped.
    """
    task_ids = {t.id for t in tasks}
    subtasks_by_id = {s.id: s for s in subtasks}
    matched: list[ParsedScheduleItem] = []

    for item in items:
        task_id = item.task_id if item.task_id in task_ids else None
        subtask = subtasks_by_id.get(item.subtask_id) if item.subtask_id is not None else None
        subtask_id = subtask.id if subtask else None
        if subtask and task_id is None:
            task_id = subtask.task_id

        if task_id is None and subtask_id is None:
            for predicate in _match_strategies(item):
                found_sub = next((s for s in subtasks if predicate(s)), None)
                if found_sub is not None:
                    task_id, subtask_id = found_sub.task_id, found_sub.id
                    break
                found_task = next((t for t in tasks if predicate(t)), None)
                if found_task is not None:
                    task_id = found_task.id
                    break

        if (item.task_id, item.subtask_id) != (task_id, subtask_id):
            logger.debug(
                "Schedule item '%s' linked to task=%s subtask=%s", item.title, task_id, subtask_id,
            )
        matched.append(item.model_copy(update={"task_id": task_id, "subtask_id": subtask_id}))

    return matched


# ---------------------------------------------------------------------------
# Schedule service
# ---------------------------------------------------------------------------


class ScheduleService:
    """Stores parsed schedules and confirms them."""

    def __init__(
        self,
        schedule_db: DailyScheduleDB,
        task_db: TaskDB,
        message_db: ScheduledMessageDB,
        clock: Clock = utcnow,
    ) -> None:
        self._schedules = schedule_db
        self._tasks = task_db
        self._messages = message_db
        self._clock = clock

    def create_daily_schedule(
        self, user: User, parsed: ParsedSchedule, original_text: str,
    ) -> DailySchedule:
        """Store a draft schedule for the user's local today."""
        tasks = self._tasks.list_tasks(user.id, status="active", include_subtasks=False)
        subtasks = self._tasks.list_user_subtasks(user.id)
        items = match_items_with_tasks(parsed.schedule_items, tasks, subtasks)

        task_ids = {t.id for t in tasks}
        notifications = [
            n.model_copy(update={"task_id": n.task_id if n.task_id in task_ids else None}).model_dump()
            for n in parsed.notification_items
        ]
        today = local_today(get_zone(user.timezone), self._clock())
        return self._schedules.create_schedule(
            user_id=user.id,
            schedule_date=today.isoformat(),
            original_content=original_text,
            items=[item.model_dump() for item in items],
            notifications=notifications,
        )

    def confirm_schedule(self, schedule_id: int, user: User) -> list[ScheduledMessage]:
        """draft → confirmed, then queue the schedule's notifications.

        Raises:
            ScheduleError: if the schedule does not exist or was already confirmed.
        """
        schedule = self._schedules.get_schedule(schedule_id)
        if schedule is None or schedule.user_id != user.id:
            raise ScheduleError(f"Schedule {schedule_id} not found")

        now = self._clock()
        if not self._schedules.mark_confirmed(schedule_id, now):
            raise ScheduleError(f"Schedule {schedule_id} is already {schedule.status}")

        tz = get_zone(user.timezone)
        schedule_day = date.fromisoformat(schedule.schedule_date)

        created: list[ScheduledMessage] = []
        for notification in schedule.notifications:
            send_at = local_instant(schedule_day, notification["start_time"], tz)
            if send_at <= now:
                # Already past: same time tomorrow
                send_at = local_instant(
                    schedule_day + timedelta(days=1), notification["start_time"], tz,
                )
            task_id = notification.get("task_id")
            metadata = {"scheduleId": schedule_id}
            if task_id is not None:
                metadata["taskId"] = task_id
            message_type = notification["notification_type"]
            message = self._messages.add(
                user_id=user.id,
                message_type=message_type,
                scheduled_for=send_at,
                title=notification["title"],
                content=notification["content"],
                task_id=task_id,
                local_date=task_slot_date(message_type, task_id, send_at, tz),
                metadata=metadata,
            )
            if message is None:
                logger.info(
                    "Schedule #%d: task #%s already has a %s that day, skipped",
                    schedule_id, task_id, message_type,
                )
            else:
                created.append(message)

        logger.info(
            "Schedule #%d confirmed for user %d, %d notification(s) queued",
            schedule_id, user.id, len(created),
        )
        return created
