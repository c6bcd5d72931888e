"""
Coach Assistant - Reminder Scheduler.

Runs on every tick and turns task times into pending scheduled messages:

    Task "Gym" at 18:00 in Europe/Berlin, today
        17:45  Pre-Reminder: Gym
        18:00  Reminder: Gym
        18:15  Check-in: Gym

All passes are idempotent. A task that already has any reminder row in
the user's current day, whatever its status or origin, is left alone; a
unique index on (user, type, task, local date) backs this up when ticks
overlap. Times are composed in the user's timezone, never the server's.

Also here: the overdue follow-up sweep (a nudge an hour after a task's time
when nothing was recorded) and the daily morning message.

This module is provider-agnostic: message content is written later by the
sweeper, these rows only carry titles and task metadata.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING

from coach.core.recurrence import RecurrenceError, RecurrencePattern
from coach.core.timeutil import (
    Clock,
    day_bounds,
    get_zone,
    local_instant,
    local_today,
    parse_instant,
    utcnow,
)
from coach.data.models import REMINDER_TYPES, TASK_SLOT_TYPES

if TYPE_CHECKING:
    from zoneinfo import ZoneInfo

    from coach.data.db import ScheduledMessageDB, TaskDB, TaskEventDB, UserDB
    from coach.data.models import Task, User

logger = logging.getLogger(__name__)

REMINDER_OFFSET_MINUTES = 15
FOLLOW_UP_BUFFER_MINUTES = 60

# (type, minutes relative to the task time, title prefix)
_REMINDER_PLAN = (
    ("pre_reminder", -REMINDER_OFFSET_MINUTES, "Pre-Reminder"),
    ("reminder", 0, "Reminder"),
    ("post_reminder_follow_up", REMINDER_OFFSET_MINUTES, "Check-in"),
)


def task_slot_date(
    message_type: str, task_id: int | None, send_at: datetime, tz: ZoneInfo,
) -> str | None:
    """The local_date a new row must carry, or None if it holds no daily slot.

    Task-linked reminders and follow-ups take the user's local date of
    their send time, no matter which code path queues them.
    """
    if task_id is None or message_type not in TASK_SLOT_TYPES:
        return None
    return local_today(tz, send_at).isoformat()


@dataclass
class TickSummary:
    reminders: int = 0
    recurring: int = 0
    morning: int = 0
    follow_ups: int = 0


class ReminderScheduler:
    """Creates pending reminder rows for every active user's timed tasks."""

    def __init__(
        self,
        user_db: UserDB,
        task_db: TaskDB,
        message_db: ScheduledMessageDB,
        event_db: TaskEventDB,
        clock: Clock = utcnow,
    ) -> None:
        self._users = user_db
        self._tasks = task_db
        self._messages = message_db
        self._events = event_db
        self._clock = clock

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    @staticmethod
    def _pattern(task: Task) -> RecurrencePattern | None:
        try:
            return RecurrencePattern.parse(task.recurrence_pattern)
        except RecurrenceError as exc:
            # Only rows written before validation existed can get here
            logger.error("Task #%d has an invalid recurrence pattern: %s", task.id, exc)
            return None

    def _done_for_today(self, task: Task, today: str) -> bool:
        return (
            self._events.has_event(task.id, "completed", today)
            or self._events.has_event(task.id, "skipped_today", today)
        )

    def _is_due_today(self, task: Task, today: date) -> bool:
        pattern = self._pattern(task)
        if pattern is None:
            return False
        if not pattern.is_recurring:
            return True
        return pattern.occurs_on(today)

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def schedule_reminders_for_task(
        self, user: User, task: Task, day: date, tz: ZoneInfo, now: datetime,
    ) -> int:
        """Insert the three reminders for one task on one local day.

        Returns how many rows were created. Instants already in the past are
        not scheduled. If the task already has any reminder row that day
        (any status, any origin) nothing is added.
        """
        start, end = day_bounds(day, tz)
        if self._messages.has_task_messages(user.id, task.id, REMINDER_TYPES, start, end):
            logger.debug("Task #%d already has reminders on %s", task.id, day)
            return 0

        task_instant = local_instant(day, task.scheduled_time, tz)
        metadata = {
            "taskId": task.id,
            "taskTitle": task.title,
            "taskScheduledTime": task.scheduled_time,
        }
        created = 0
        for message_type, offset, prefix in _REMINDER_PLAN:
            send_at = task_instant + timedelta(minutes=offset)
            if send_at <= now:
                continue
            row = self._messages.add(
                user_id=user.id,
                message_type=message_type,
                scheduled_for=send_at,
                title=f"{prefix}: {task.title}",
                task_id=task.id,
                local_date=day.isoformat(),
                metadata=metadata,
            )
            if row is not None:
                created += 1
        return created

    def _schedule_for_users(self, recurring: bool) -> int:
        now = self._clock()
        created = 0
        for user in self._users.list_active_users():
            if not user.timezone:
                continue
            try:
                tz = get_zone(user.timezone)
                today = local_today(tz, now)
                for task in self._tasks.list_scheduled_tasks(user.id):
                    pattern = self._pattern(task)
                    if pattern is None or pattern.is_recurring != recurring:
                        continue
                    if recurring and not pattern.occurs_on(today):
                        continue
                    if self._done_for_today(task, today.isoformat()):
                        continue
                    created += self.schedule_reminders_for_task(user, task, today, tz, now)
            except Exception as exc:
                logger.error("Failed to schedule reminders for user %d: %s", user.id, exc)
        return created

    def schedule_daily_reminders(self) -> int:
        """Reminders for today's timed tasks without a recurrence pattern."""
        created = self._schedule_for_users(recurring=False)
        if created:
            logger.info("Daily reminders: %d scheduled", created)
        return created

    def schedule_recurring_tasks(self) -> int:
        """Reminders for recurring tasks whose pattern includes today."""
        created = self._schedule_for_users(recurring=True)
        if created:
            logger.info("Recurring reminders: %d scheduled", created)
        return created

    # ------------------------------------------------------------------
    # Overdue follow-ups
    # ------------------------------------------------------------------

    def schedule_overdue_follow_ups(self) -> int:
        """One immediate follow-up per task an hour past its time with nothing recorded."""
        now = self._clock()
        created = 0
        for user in self._users.list_active_users():
            try:
                tz = get_zone(user.timezone)
                today = local_today(tz, now)
                today_iso = today.isoformat()
                start, end = day_bounds(today, tz)
                for task in self._tasks.list_scheduled_tasks(user.id):
                    if not self._is_due_today(task, today):
                        continue
                    follow_up_at = local_instant(today, task.scheduled_time, tz) + timedelta(
                        minutes=FOLLOW_UP_BUFFER_MINUTES,
                    )
                    if now < follow_up_at:
                        continue
                    created_at = parse_instant(task.created_at)
                    if created_at is not None and created_at > follow_up_at:
                        continue
                    if self._done_for_today(task, today_iso):
                        continue
                    if self._messages.has_task_messages(
                        user.id, task.id, ("follow_up",), start, end,
                    ):
                        continue
                    row = self._messages.add(
                        user_id=user.id,
                        message_type="follow_up",
                        scheduled_for=now,
                        title=f"Follow-up: {task.title}",
                        content=(
                            f'Just checking in on the task "{task.title}" that was scheduled '
                            f"for {task.scheduled_time}. How did it go?"
                        ),
                        task_id=task.id,
                        local_date=today_iso,
                        metadata={"taskId": task.id},
                    )
                    if row is not None:
                        created += 1
            except Exception as exc:
                logger.error("Failed to schedule follow-ups for user %d: %s", user.id, exc)
        if created:
            logger.info("Overdue follow-ups: %d scheduled", created)
        return created

    # ------------------------------------------------------------------
    # Morning message
    # ------------------------------------------------------------------

    def schedule_morning_messages(self) -> int:
        """One morning message per user per local day at their preferred time."""
        now = self._clock()
        created = 0
        for user in self._users.list_active_users():
            if not user.morning_message_time:
                continue
            try:
                tz = get_zone(user.timezone)
                day = local_today(tz, now)
                send_at = local_instant(day, user.morning_message_time, tz)
                if send_at <= now:
                    day = day + timedelta(days=1)
                    send_at = local_instant(day, user.morning_message_time, tz)
                row = self._messages.add(
                    user_id=user.id,
                    message_type="morning_message",
                    scheduled_for=send_at,
                    title="Morning check-in",
                    local_date=day.isoformat(),
                )
                if row is not None:
                    created += 1
            except Exception as exc:
                logger.error("Failed to schedule morning message for user %d: %s", user.id, exc)
        return created

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def run_tick(self) -> TickSummary:
        """Run every scheduling pass; one failing pass does not stop the others."""
        summary = TickSummary()
        passes = (
            ("reminders", self.schedule_daily_reminders),
            ("recurring", self.schedule_recurring_tasks),
            ("morning", self.schedule_morning_messages),
            ("follow_ups", self.schedule_overdue_follow_ups),
        )
        for field_name, run in passes:
            try:
                setattr(summary, field_name, run())
            except Exception as exc:
                logger.error("Scheduler pass %s failed: %s", field_name, exc)
        return summary
