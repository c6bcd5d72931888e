"""
Coach Assistant - Function Registry.

The side-effecting operations the model may invoke by name with JSON
arguments. Each function has a pydantic argument model; the same model
validates incoming arguments and generates the JSON Schema advertised to
providers in FUNCTION_DECLARATIONS, so the two can never drift apart.

Functions available:
  Tasks
    get_task_list             → list tasks with their subtasks
    create_task               → add a task (optionally timed / recurring)
    update_task               → change fields, complete or reschedule
    delete_task               → soft delete
    create_subtask / update_subtask / delete_subtask

  Schedule
    get_todays_schedule       → today's plan, timed tasks and pending messages
    get_scheduled_messages    → list scheduled messages
    schedule_message          → queue a one-off message
    cancel_scheduled_message  → pending → cancelled
    snooze_scheduled_message  → cancel and re-queue N minutes later
    mark_task_skipped_today   → record a skip, silence today's reminders

  Memory
    get_user_facts / add_user_fact

Every handler returns {"success": True, ...} or {"error": "..."}.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from coach.core.recurrence import does_task_recur_on_date, normalize_pattern, validate_time_of_day
from coach.core.reminders import task_slot_date
from coach.core.timeutil import Clock, day_bounds, get_zone, local_today, resolve_send_time, utcnow

if TYPE_CHECKING:
    from coach.data.db import (
        DailyScheduleDB,
        FactDB,
        ScheduledMessageDB,
        TaskDB,
        TaskEventDB,
        UserDB,
    )
    from coach.data.models import ScheduledMessage, Subtask, Task, User

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------


class _Args(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class _TimedArgs(_Args):
    @field_validator("scheduled_time", check_fields=False)
    @classmethod
    def _check_time(cls, v: str | None) -> str | None:
        return validate_time_of_day(v)


class GetTaskListArgs(_Args):
    status: Literal["active", "completed", "archived"] | None = Field(
        None, description="Only return tasks with this status.",
    )


class CreateTaskArgs(_TimedArgs):
    title: str = Field(..., min_length=1)
    description: str = ""
    task_type: Literal["one_off", "recurring", "project", "goal"] = Field("one_off", alias="taskType")
    scheduled_time: str | None = Field(
        None, alias="scheduledTime", description="Local time of day, 24-hour HH:MM.",
    )
    recurrence_pattern: str | None = Field(
        None,
        alias="recurrencePattern",
        description="none, daily, weekly:<ISO days 1=Mon..7=Sun, comma separated>, or monthly:<day>.",
    )
    deadline: date | None = None

    @field_validator("recurrence_pattern")
    @classmethod
    def _check_pattern(cls, v: str | None) -> str | None:
        return normalize_pattern(v)


class UpdateTaskArgs(_TimedArgs):
    task_id: int = Field(..., alias="taskId")
    title: str | None = None
    description: str | None = None
    status: Literal["active", "completed", "archived"] | None = None
    scheduled_time: str | None = Field(None, alias="scheduledTime")
    recurrence_pattern: str | None = Field(None, alias="recurrencePattern")
    deadline: date | None = None

    @field_validator("recurrence_pattern")
    @classmethod
    def _check_pattern(cls, v: str | None) -> str | None:
        return normalize_pattern(v)


class TaskIdArgs(_Args):
    task_id: int = Field(..., alias="taskId")


class CreateSubtaskArgs(_TimedArgs):
    task_id: int = Field(..., alias="taskId")
    title: str = Field(..., min_length=1)
    description: str = ""
    scheduled_time: str | None = Field(None, alias="scheduledTime")
    deadline: date | None = None


class UpdateSubtaskArgs(_TimedArgs):
    subtask_id: int = Field(..., alias="subtaskId")
    title: str | None = None
    description: str | None = None
    completed: bool | None = None
    scheduled_time: str | None = Field(None, alias="scheduledTime")
    deadline: date | None = None


class SubtaskIdArgs(_Args):
    subtask_id: int = Field(..., alias="subtaskId")


class NoArgs(_Args):
    pass


class GetScheduledMessagesArgs(_Args):
    status: Literal["pending", "sent", "cancelled", "failed"] | None = None
    task_id: int | None = Field(None, alias="taskId")


class ScheduleMessageArgs(_Args):
    content: str = Field(..., min_length=1)
    scheduled_for: str = Field(
        ...,
        alias="scheduledFor",
        description="Local HH:MM (next occurrence) or an ISO-8601 timestamp.",
    )
    message_type: Literal["follow_up", "reminder", "check_in", "notification"] = Field(
        "follow_up", alias="type",
    )
    title: str = ""
    task_id: int | None = Field(None, alias="taskId")


class ScheduleIdArgs(_Args):
    schedule_id: int = Field(..., alias="scheduleId")


class SnoozeScheduledMessageArgs(_Args):
    schedule_id: int = Field(..., alias="scheduleId")
    minutes: int = Field(15, ge=1, le=24 * 60)


class MarkTaskSkippedArgs(_Args):
    task_id: int = Field(..., alias="taskId")
    reason: str = ""


class GetUserFactsArgs(_Args):
    category: str | None = None


class AddUserFactArgs(_Args):
    content: str = Field(..., min_length=1)
    category: str = "general"


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FunctionSpec:
    name: str
    description: str
    args_model: type[_Args]

    def declaration(self) -> dict[str, Any]:
        schema = self.args_model.model_json_schema(by_alias=True)
        schema.pop("title", None)
        schema.setdefault("properties", {})
        return {"name": self.name, "description": self.description, "parameters": schema}


FUNCTIONS: dict[str, FunctionSpec] = {
    spec.name: spec
    for spec in (
        FunctionSpec("get_task_list", "List the user's tasks with their subtasks.", GetTaskListArgs),
        FunctionSpec("create_task", "Create a new task, habit or goal.", CreateTaskArgs),
        FunctionSpec(
            "update_task",
            "Update a task. Setting status to completed records a completion; "
            "changing scheduledTime reschedules its reminders.",
            UpdateTaskArgs,
        ),
        FunctionSpec("delete_task", "Delete a task and cancel its pending reminders.", TaskIdArgs),
        FunctionSpec("create_subtask", "Add a subtask to a task.", CreateSubtaskArgs),
        FunctionSpec("update_subtask", "Update or complete a subtask.", UpdateSubtaskArgs),
        FunctionSpec("delete_subtask", "Delete a subtask.", SubtaskIdArgs),
        FunctionSpec(
            "get_todays_schedule",
            "Get today's confirmed schedule, timed tasks and pending messages.",
            NoArgs,
        ),
        FunctionSpec(
            "get_scheduled_messages",
            "List scheduled reminders and messages, optionally by status or task.",
            GetScheduledMessagesArgs,
        ),
        FunctionSpec("schedule_message", "Schedule a one-off message to the user.", ScheduleMessageArgs),
        FunctionSpec(
            "cancel_scheduled_message", "Cancel a pending scheduled message.", ScheduleIdArgs,
        ),
        FunctionSpec(
            "snooze_scheduled_message",
            "Postpone a pending scheduled message by a number of minutes.",
            SnoozeScheduledMessageArgs,
        ),
        FunctionSpec(
            "mark_task_skipped_today",
            "Mark a task as skipped for today; silences today's reminders and follow-ups.",
            MarkTaskSkippedArgs,
        ),
        FunctionSpec("get_user_facts", "List what is known about the user.", GetUserFactsArgs),
        FunctionSpec("add_user_fact", "Remember a fact about the user.", AddUserFactArgs),
    )
}

FUNCTION_DECLARATIONS: list[dict[str, Any]] = [spec.declaration() for spec in FUNCTIONS.values()]


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _subtask_to_dict(subtask: Subtask) -> dict[str, Any]:
    return {
        "id": subtask.id,
        "title": subtask.title,
        "description": subtask.description,
        "completed": subtask.completed,
        "scheduledTime": subtask.scheduled_time,
        "deadline": subtask.deadline,
    }


def task_to_dict(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "taskType": task.task_type,
        "status": task.status,
        "scheduledTime": task.scheduled_time,
        "recurrencePattern": task.recurrence_pattern or "none",
        "deadline": task.deadline,
        "subtasks": [_subtask_to_dict(s) for s in task.subtasks],
    }


def message_to_dict(message: ScheduledMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "type": message.message_type,
        "status": message.status,
        "scheduledFor": message.scheduled_for,
        "title": message.title,
        "content": message.content,
        "taskId": message.task_id,
    }


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class FunctionRegistry:
    """Validates and dispatches function calls for one process.

    Holds no per-user state; every call receives the user id explicitly.
    """

    def __init__(
        self,
        user_db: UserDB,
        task_db: TaskDB,
        message_db: ScheduledMessageDB,
        event_db: TaskEventDB,
        fact_db: FactDB,
        schedule_db: DailyScheduleDB,
        clock: Clock = utcnow,
    ) -> None:
        self._users = user_db
        self._tasks = task_db
        self._messages = message_db
        self._events = event_db
        self._facts = fact_db
        self._schedules = schedule_db
        self._clock = clock

    @property
    def declarations(self) -> list[dict[str, Any]]:
        return FUNCTION_DECLARATIONS

    def execute(self, name: str, arguments: dict[str, Any], user_id: int) -> dict[str, Any]:
        """Run a function by name. Never raises: failures become {"error": ...}."""
        spec = FUNCTIONS.get(name)
        if spec is None:
            logger.warning("Model requested unknown function %r", name)
            return {"error": f"Unknown function: {name}"}

        try:
            args = spec.args_model.model_validate(arguments)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in exc.errors()
            )
            logger.info("Invalid arguments for %s: %s", name, problems)
            return {"error": f"Invalid arguments for {name}: {problems}"}

        user = self._users.get_user(user_id)
        if user is None:
            return {"error": f"User {user_id} not found"}

        handler = getattr(self, f"_exec_{name}")
        try:
            result = handler(user, args)
        except Exception as exc:
            logger.error("Function %s failed for user %d: %s", name, user_id, exc)
            return {"error": str(exc)}

        logger.info("Function %s executed for user %d", name, user_id)
        return result

    # -- helpers -------------------------------------------------------------

    def _today(self, user: User) -> date:
        return local_today(get_zone(user.timezone), self._clock())

    def _owned_task(self, user: User, task_id: int) -> Task:
        task = self._tasks.get_task(task_id, user_id=user.id)
        if task is None:
            raise ValueError(f"Task {task_id} not found")
        return task

    def _owned_subtask(self, user: User, subtask_id: int) -> Subtask:
        subtask = self._tasks.get_subtask(subtask_id)
        if subtask is None or self._tasks.get_task(subtask.task_id, user_id=user.id) is None:
            raise ValueError(f"Subtask {subtask_id} not found")
        return subtask

    # -- tasks ---------------------------------------------------------------

    def _exec_get_task_list(self, user: User, args: GetTaskListArgs) -> dict[str, Any]:
        tasks = self._tasks.list_tasks(user.id, status=args.status)
        return {"success": True, "tasks": [task_to_dict(t) for t in tasks]}

    def _exec_create_task(self, user: User, args: CreateTaskArgs) -> dict[str, Any]:
        task = self._tasks.add_task(
            user_id=user.id,
            title=args.title,
            description=args.description,
            task_type=args.task_type,
            scheduled_time=args.scheduled_time,
            recurrence_pattern=args.recurrence_pattern,
            deadline=args.deadline.isoformat() if args.deadline else None,
        )
        return {"success": True, "task": task_to_dict(task)}

    def _exec_update_task(self, user: User, args: UpdateTaskArgs) -> dict[str, Any]:
        before = self._owned_task(user, args.task_id)
        fields: dict[str, Any] = {}
        for name in ("title", "description", "status", "scheduled_time", "recurrence_pattern"):
            if name in args.model_fields_set:
                fields[name] = getattr(args, name)
        if "deadline" in args.model_fields_set:
            fields["deadline"] = args.deadline.isoformat() if args.deadline else None

        task = self._tasks.update_task(before.id, **fields)
        today = self._today(user).isoformat()

        if task.status == "completed" and before.status != "completed":
            self._events.add_event(user.id, task.id, "completed", today)
            self._messages.cancel_pending_for_task(task.id)
        elif task.status != "active" and before.status == "active":
            self._messages.cancel_pending_for_task(task.id)

        if task.scheduled_time != before.scheduled_time:
            self._messages.release_task_day(task.id, today)

        return {"success": True, "task": task_to_dict(task)}

    def _exec_delete_task(self, user: User, args: TaskIdArgs) -> dict[str, Any]:
        task = self._owned_task(user, args.task_id)
        self._tasks.delete_task(task.id)
        cancelled = self._messages.cancel_pending_for_task(task.id)
        return {"success": True, "taskId": task.id, "cancelledMessages": cancelled}

    def _exec_create_subtask(self, user: User, args: CreateSubtaskArgs) -> dict[str, Any]:
        task = self._owned_task(user, args.task_id)
        subtask = self._tasks.add_subtask(
            task_id=task.id,
            title=args.title,
            description=args.description,
            scheduled_time=args.scheduled_time,
            deadline=args.deadline.isoformat() if args.deadline else None,
        )
        return {"success": True, "subtask": _subtask_to_dict(subtask)}

    def _exec_update_subtask(self, user: User, args: UpdateSubtaskArgs) -> dict[str, Any]:
        subtask = self._owned_subtask(user, args.subtask_id)
        fields: dict[str, Any] = {}
        for name in ("title", "description", "completed", "scheduled_time"):
            if name in args.model_fields_set:
                fields[name] = getattr(args, name)
        if "deadline" in args.model_fields_set:
            fields["deadline"] = args.deadline.isoformat() if args.deadline else None
        updated = self._tasks.update_subtask(subtask.id, **fields)
        return {"success": True, "subtask": _subtask_to_dict(updated)}

    def _exec_delete_subtask(self, user: User, args: SubtaskIdArgs) -> dict[str, Any]:
        subtask = self._owned_subtask(user, args.subtask_id)
        self._tasks.delete_subtask(subtask.id)
        return {"success": True, "subtaskId": subtask.id}

    # -- schedule ------------------------------------------------------------

    def _exec_get_todays_schedule(self, user: User, args: NoArgs) -> dict[str, Any]:
        tz = get_zone(user.timezone)
        today = self._today(user)
        start, end = day_bounds(today, tz)

        schedule = self._schedules.get_confirmed_for_date(user.id, today.isoformat())
        items = []
        if schedule is not None:
            items = [
                {
                    "title": item.title,
                    "startTime": item.start_time,
                    "endTime": item.end_time,
                    "taskId": item.task_id,
                    "subtaskId": item.subtask_id,
                }
                for item in schedule.items
            ]

        timed_tasks = [
            {"id": t.id, "title": t.title, "scheduledTime": t.scheduled_time}
            for t in self._tasks.list_scheduled_tasks(user.id)
            if not t.recurrence_pattern or does_task_recur_on_date(t.recurrence_pattern, today)
        ]
        pending = self._messages.list_for_user(user.id, status="pending", start=start, end=end)
        return {
            "success": True,
            "date": today.isoformat(),
            "scheduleItems": items,
            "timedTasks": timed_tasks,
            "pendingMessages": [message_to_dict(m) for m in pending],
        }

    def _exec_get_scheduled_messages(
        self, user: User, args: GetScheduledMessagesArgs,
    ) -> dict[str, Any]:
        messages = self._messages.list_for_user(user.id, status=args.status, task_id=args.task_id)
        return {"success": True, "messages": [message_to_dict(m) for m in messages]}

    def _exec_schedule_message(self, user: User, args: ScheduleMessageArgs) -> dict[str, Any]:
        if args.task_id is not None:
            self._owned_task(user, args.task_id)
        now = self._clock()
        tz = get_zone(user.timezone)
        send_at = resolve_send_time(args.scheduled_for, tz, now)
        if send_at < now - timedelta(minutes=1):
            raise ValueError("scheduledFor is in the past")
        metadata = {"taskId": args.task_id} if args.task_id is not None else {}
        local_date = task_slot_date(args.message_type, args.task_id, send_at, tz)
        message = self._messages.add(
            user_id=user.id,
            message_type=args.message_type,
            scheduled_for=send_at,
            title=args.title,
            content=args.content,
            task_id=args.task_id,
            local_date=local_date,
            metadata=metadata,
        )
        if message is None:
            raise ValueError(
                f"A {args.message_type} for task {args.task_id} is already scheduled on {local_date}"
            )
        return {"success": True, "message": message_to_dict(message)}

    def _exec_cancel_scheduled_message(self, user: User, args: ScheduleIdArgs) -> dict[str, Any]:
        if not self._messages.cancel(args.schedule_id, user_id=user.id):
            raise ValueError(f"Scheduled message {args.schedule_id} is not pending")
        return {"success": True, "scheduleId": args.schedule_id, "status": "cancelled"}

    def _exec_snooze_scheduled_message(
        self, user: User, args: SnoozeScheduledMessageArgs,
    ) -> dict[str, Any]:
        original = self._messages.get(args.schedule_id)
        if original is None or original.user_id != user.id:
            raise ValueError(f"Scheduled message {args.schedule_id} not found")
        if original.status != "pending":
            raise ValueError(f"Scheduled message {args.schedule_id} is not pending")

        send_at = self._clock() + timedelta(minutes=args.minutes)
        local_date = task_slot_date(
            original.message_type, original.task_id, send_at, get_zone(user.timezone),
        )
        if (
            local_date is not None
            and local_date != original.local_date
            and self._messages.slot_taken(
                user.id, original.message_type, original.task_id, local_date,
            )
        ):
            raise ValueError(
                f"A {original.message_type} for task {original.task_id} is already "
                f"scheduled on {local_date}"
            )
        if not self._messages.cancel(original.id, user_id=user.id):
            raise ValueError(f"Scheduled message {args.schedule_id} is not pending")

        if local_date is not None and local_date == original.local_date:
            # The snoozed copy takes over the original's daily slot
            self._messages.release_slot(original.id)
        snoozed = self._messages.add(
            user_id=user.id,
            message_type=original.message_type,
            scheduled_for=send_at,
            title=original.title,
            content=original.content,
            task_id=original.task_id,
            local_date=local_date,
            metadata={**original.metadata, "snoozedFrom": original.id},
        )
        return {"success": True, "cancelledId": original.id, "message": message_to_dict(snoozed)}

    def _exec_mark_task_skipped_today(self, user: User, args: MarkTaskSkippedArgs) -> dict[str, Any]:
        task = self._owned_task(user, args.task_id)
        today = self._today(user).isoformat()
        if not self._events.has_event(task.id, "skipped_today", today):
            self._events.add_event(user.id, task.id, "skipped_today", today, notes=args.reason)
        cancelled = self._messages.cancel_pending_for_task(task.id, local_date=today)
        return {"success": True, "taskId": task.id, "date": today, "cancelledMessages": cancelled}

    # -- memory --------------------------------------------------------------

    def _exec_get_user_facts(self, user: User, args: GetUserFactsArgs) -> dict[str, Any]:
        facts = self._facts.list_facts(user.id, category=args.category)
        return {
            "success": True,
            "facts": [{"id": f.id, "category": f.category, "content": f.content} for f in facts],
        }

    def _exec_add_user_fact(self, user: User, args: AddUserFactArgs) -> dict[str, Any]:
        fact = self._facts.add_fact(user.id, args.content, category=args.category)
        return {"success": True, "factId": fact.id}
