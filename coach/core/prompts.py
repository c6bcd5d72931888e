"""
Coach Assistant - Context prompt rendering.

Builds the system prompt for each loop iteration from the user's current
tasks and facts, the goal of the turn (a user conversation or a
system-initiated reminder) and the results of the previous function call.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from coach.core.interpreter import FINAL_SCHEDULE_MARKER, PROPOSED_SCHEDULE_MARKER
from coach.core.timeutil import format_local, get_zone

if TYPE_CHECKING:
    from coach.data.models import KnownFact, Task, User


_BASE_PROMPT = """You are a supportive personal coach chatting with {name} over a messaging app.
You help them plan their day, keep track of tasks and habits, and follow through.

Current local time for the user: {now} ({timezone}).

ACTIVE TASKS:
{tasks}

KNOWN FACTS ABOUT THE USER:
{facts}

FUNCTIONS:
You may call one function per reply. The available functions and their JSON
arguments are declared to you separately. After a call you receive its result
and can call another function or answer the user.

SCHEDULES:
- When you propose a plan for the day and wait for the user's approval, include
  the line "{proposed}" in your message.
- When the user confirms a plan, write "{final}" followed by one line per item,
  e.g. "- 09:30 AM: Draft report (Task ID: 42)". Lines containing the words
  reminder, check-in or follow-up become notifications.

RESPONSE FORMAT (CRITICAL):
Reply with a single JSON object:
- "message": the text for the user (string)
- "function_call": optional {{"name": "...", "arguments": {{...}}}}
- "scheduleUpdates": optional list of {{"taskId", "action": "reschedule"|"complete"|"skip"|"create",
  "scheduledTime"?, "title"?, "recurrencePattern"?}}
- "scheduledMessages": optional list of {{"type", "scheduledFor" (HH:MM or ISO-8601),
  "content", "title"?}}
"""

_USER_GOAL = "Goal: respond to the user's latest message. Your response MUST be JSON."

_SYSTEM_GOALS: dict[str, str] = {
    "morning_summary": (
        "You are starting the user's day. Greet them, summarise today's timed tasks and "
        "suggest a plan, marking it as a proposal."
    ),
    "task_pre_reminder": "You are about to send a PRE-REMINDER{task}.",
    "task_reminder": "You are about to send an ON-TIME REMINDER{task}.",
    "task_post_reminder_follow_up": (
        "You are about to send a quick FOLLOW-UP asking if the user completed the task{task}, "
        "shortly after its scheduled time."
    ),
    "task_follow_up": (
        "You are about to send a FOLLOW-UP{task}: its scheduled time passed a while ago "
        "and nothing was recorded. Ask kindly how it went."
    ),
    "generic": "You are about to send a scheduled message: {content}",
}

_SYSTEM_SUFFIX = (
    " Check the conversation history: if the user already dealt with this, or the message is "
    'no longer relevant, reply with {"message": null}. Otherwise write a short, friendly '
    "message. Your response MUST be JSON."
)


@dataclass
class PromptContext:
    user: User
    now: datetime
    tasks: list[Task] = field(default_factory=list)
    facts: list[KnownFact] = field(default_factory=list)
    request_type: str | None = None            # None for a user conversation
    request_details: dict[str, Any] = field(default_factory=dict)
    function_results: dict[str, Any] | None = None


def _format_tasks(tasks: list[Task]) -> str:
    if not tasks:
        return "(none)"
    lines = []
    for task in tasks:
        parts = [f"- [ID {task.id}] {task.title} ({task.task_type})"]
        if task.scheduled_time:
            parts.append(f"at {task.scheduled_time}")
        if task.recurrence_pattern:
            parts.append(f"repeats {task.recurrence_pattern}")
        if task.deadline:
            parts.append(f"due {task.deadline}")
        lines.append(" ".join(parts))
        for subtask in task.subtasks:
            mark = "x" if subtask.completed else " "
            lines.append(f"    [{mark}] [Subtask ID {subtask.id}] {subtask.title}")
    return "\n".join(lines)


def _format_facts(facts: list[KnownFact]) -> str:
    if not facts:
        return "(none)"
    return "\n".join(f"- ({fact.category}) {fact.content}" for fact in facts)


def _goal(context: PromptContext) -> str:
    if context.request_type is None:
        return _USER_GOAL
    details = context.request_details
    template = _SYSTEM_GOALS.get(context.request_type, _SYSTEM_GOALS["generic"])
    task = ""
    if details.get("taskId") is not None:
        task = f' for task "{details.get("taskTitle", "")}" (ID: {details["taskId"]})'
        if details.get("taskScheduledTime"):
            task += f" scheduled at {details['taskScheduledTime']}"
    return "Goal: " + template.format(task=task, content=details.get("content", "")) + _SYSTEM_SUFFIX


def build_prompt(context: PromptContext) -> str:
    tz = get_zone(context.user.timezone)
    prompt = _BASE_PROMPT.format(
        name=context.user.display_name,
        now=format_local(context.now, tz),
        timezone=context.user.timezone,
        tasks=_format_tasks(context.tasks),
        facts=_format_facts(context.facts),
        proposed=PROPOSED_SCHEDULE_MARKER,
        final=FINAL_SCHEDULE_MARKER,
    )
    prompt += "\n" + _goal(context)

    if context.function_results:
        prompt += (
            "\n\nFUNCTION EXECUTION RESULTS:\n"
            "You previously called a function and received this result:\n"
            f"{json.dumps(context.function_results, indent=2, default=str)}\n"
            "Use it to decide your next step. If it reports success, confirm to the user "
            "instead of repeating the action."
        )
    return prompt
