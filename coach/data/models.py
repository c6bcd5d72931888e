"""
Coach Assistant - Data Models.

Plain dataclasses shared by the SQLite stores and the core modules.
Tasks, scheduled messages and the conversation history persist across
bot restarts; nothing here talks to the database directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Scheduled message types produced by the reminder scheduler
REMINDER_TYPES = ("pre_reminder", "reminder", "post_reminder_follow_up")

# Task-linked types that hold one slot per (user, task, local day)
TASK_SLOT_TYPES = REMINDER_TYPES + ("follow_up",)

MESSAGE_TYPES = (
    "pre_reminder",
    "reminder",
    "post_reminder_follow_up",
    "follow_up",
    "morning_message",
    "check_in",
    "notification",
)

MESSAGE_STATUSES = ("pending", "sent", "cancelled", "failed")

TASK_TYPES = ("one_off", "recurring", "project", "goal")
TASK_STATUSES = ("active", "completed", "archived")

TASK_EVENT_TYPES = ("completed", "skipped_today")


@dataclass
class User:
    """A person the assistant coaches.

    `chat_id` is the Telegram chat address used for outbound messages;
    a user without one cannot be reached proactively.
    """

    id: int
    display_name: str
    chat_id: int | None = None
    timezone: str = "UTC"
    preferred_model: str = ""          # empty → configured default
    morning_message_time: str | None = None  # HH:MM local
    active: bool = True
    created_at: str = ""


@dataclass
class Subtask:
    id: int
    task_id: int
    title: str
    description: str = ""
    completed: bool = False
    scheduled_time: str | None = None  # HH:MM local
    deadline: str | None = None        # ISO date YYYY-MM-DD


@dataclass
class Task:
    """A task, habit or goal owned by a single user.

    `recurrence_pattern` is stored in canonical form (see
    coach.core.recurrence) and is None for one-off tasks.
    """

    id: int
    user_id: int
    title: str
    description: str = ""
    task_type: str = "one_off"
    status: str = "active"
    scheduled_time: str | None = None      # HH:MM local
    recurrence_pattern: str | None = None  # "daily", "weekly:1,3,5", "monthly:15"
    deadline: str | None = None            # ISO date YYYY-MM-DD
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    subtasks: list[Subtask] = field(default_factory=list)


@dataclass
class ScheduledMessage:
    """A message queued for proactive delivery.

    Never physically deleted: cancellation is a status change.
    """

    id: int
    user_id: int
    message_type: str
    scheduled_for: str                 # ISO-8601 UTC instant
    status: str = "pending"
    title: str = ""
    content: str = ""
    task_id: int | None = None
    local_date: str | None = None      # user-local YYYY-MM-DD, dedup key
    metadata: dict[str, Any] = field(default_factory=dict)
    sent_at: str | None = None
    created_at: str = ""


@dataclass
class TaskEvent:
    """Append-only record of a task being completed or skipped on a day."""

    id: int
    user_id: int
    task_id: int
    event_type: str                    # "completed" | "skipped_today"
    event_date: str                    # user-local YYYY-MM-DD
    created_at: str = ""
    notes: str = ""


@dataclass
class KnownFact:
    id: int
    user_id: int
    category: str
    content: str
    created_at: str = ""


@dataclass
class HistoryMessage:
    """A persisted conversation turn, as stored in message_history."""

    id: int
    user_id: int
    role: str                          # "user" | "assistant"
    content: str
    created_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ScheduleItem:
    id: int
    schedule_id: int
    title: str
    start_time: str                    # HH:MM local
    end_time: str | None = None
    description: str = ""
    task_id: int | None = None
    subtask_id: int | None = None
    status: str = "pending"


@dataclass
class DailySchedule:
    """A day-scoped plan. Moves draft → confirmed exactly once."""

    id: int
    user_id: int
    schedule_date: str                 # user-local YYYY-MM-DD
    status: str = "draft"
    original_content: str = ""
    confirmed_at: str | None = None
    items: list[ScheduleItem] = field(default_factory=list)
    # Parsed notification lines, turned into scheduled messages on confirmation
    notifications: list[dict[str, Any]] = field(default_factory=list)
