"""
Coach Assistant - Orchestration Loop.

The conversation state machine. A user message goes in, a reply comes out;
in between the model may call functions, one per iteration:

    build prompt → provider → interpret
        ├─ function call → execute → feed result back → repeat
        └─ no call       → apply schedule side effects → persist → reply

Nothing in here aborts the conversation except running out of iterations,
which produces a fixed apology. Provider outages arrive as a sentinel
reply, function failures as {"error": ...} payloads the model can react to.

The same primitives also write proactive messages (reminders, follow-ups,
morning summaries) for the sweeper: a single system-initiated turn with a
fixed intent.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from coach.core import interpreter
from coach.core.llm import Turn
from coach.core.prompts import PromptContext, build_prompt
from coach.core.schedule_parser import parse_schedule
from coach.core.timeutil import Clock, format_local, get_zone, utcnow
from coach.data.db import parse_utc_iso

if TYPE_CHECKING:
    from coach.core.functions import FunctionRegistry
    from coach.core.interpreter import FunctionCall, InterpretedResponse
    from coach.core.llm import ProviderGateway
    from coach.core.schedule_parser import ScheduleService
    from coach.data.db import FactDB, MessageHistoryDB, TaskDB, UserDB
    from coach.data.models import User

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = "Sorry, I got stuck trying to process that. Could you try rephrasing?"

_SCHEDULABLE_TYPES = ("follow_up", "reminder", "check_in", "notification")


@dataclass
class SystemReply:
    """Outcome of a system-initiated turn.

    `skip` means the model judged the message no longer relevant;
    `failed` means the provider could not be reached.
    """

    message: str | None
    skip: bool = False
    failed: bool = False


class Orchestrator:
    """Runs conversation loops. Keeps no per-user state between calls."""

    def __init__(
        self,
        gateway: ProviderGateway,
        registry: FunctionRegistry,
        user_db: UserDB,
        task_db: TaskDB,
        fact_db: FactDB,
        history_db: MessageHistoryDB,
        schedule_service: ScheduleService,
        clock: Clock = utcnow,
        max_iterations: int | None = None,
        history_limit: int | None = None,
    ) -> None:
        from coach.config import settings

        self._gateway = gateway
        self._registry = registry
        self._users = user_db
        self._tasks = task_db
        self._facts = fact_db
        self._history = history_db
        self._schedules = schedule_service
        self._clock = clock
        self._max_iterations = max_iterations or settings.MAX_LOOP_ITERATIONS
        self._history_limit = history_limit or settings.HISTORY_LIMIT

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def _get_user(self, user_id: int) -> User:
        user = self._users.get_user(user_id)
        if user is None:
            raise ValueError(f"User {user_id} not found")
        return user

    def _load_history(self, user: User) -> list[Turn]:
        """Last N persisted turns in chronological order, timestamp-prefixed."""
        tz = get_zone(user.timezone)
        turns = []
        for entry in reversed(self._history.recent(user.id, limit=self._history_limit)):
            stamp = format_local(parse_utc_iso(entry.created_at), tz)
            role = entry.role if entry.role in ("user", "assistant") else "user"
            turns.append(Turn(role=role, content=f"({stamp}) {entry.content}"))
        return turns

    def _system_turn(
        self,
        user: User,
        function_results: dict[str, Any] | None = None,
        request_type: str | None = None,
        request_details: dict[str, Any] | None = None,
    ) -> Turn:
        context = PromptContext(
            user=user,
            now=self._clock(),
            tasks=self._tasks.list_tasks(user.id, status="active"),
            facts=self._facts.list_facts(user.id),
            request_type=request_type,
            request_details=request_details or {},
            function_results=function_results,
        )
        return Turn(role="system", content=build_prompt(context))

    # ------------------------------------------------------------------
    # User turns
    # ------------------------------------------------------------------

    async def handle_user_turn(self, user_id: int, text: str) -> str:
        """Run the loop for one inbound message and return the reply text."""
        user = self._get_user(user_id)
        turns = self._load_history(user)
        self._history.add_message(user.id, "user", text, created_at=self._clock())
        turns.append(Turn(role="user", content=text))

        function_results: dict[str, Any] | None = None
        for iteration in range(1, self._max_iterations + 1):
            system = self._system_turn(user, function_results=function_results)
            reply = await self._gateway.generate_completion(
                user.preferred_model,
                [system, *turns],
                json_mode=True,
                functions=self._registry.declarations,
            )
            interpreted = interpreter.parse(reply.content, reply.tool_calls)

            if interpreted.protocol_error:
                payload = {"error": interpreted.protocol_error}
                turns.append(Turn(role="assistant", content=reply.content))
                turns.append(Turn(
                    role="function", name="function_call_error", content=json.dumps(payload),
                ))
                function_results = payload
                continue

            call = interpreted.function_call
            if call is not None:
                logger.info("User %d iteration %d: calling %s", user.id, iteration, call.name)
                result = self._execute(call, user.id)
                turns.append(Turn(
                    role="assistant",
                    content=reply.content,
                    tool_calls=[tc for tc in reply.tool_calls if tc.id == call.tool_call_id],
                ))
                turns.append(Turn(
                    role="function",
                    name=call.name,
                    content=json.dumps(result, default=str),
                    tool_call_id=call.tool_call_id,
                ))
                function_results = {"name": call.name, "arguments": call.arguments, "result": result}
                continue

            message = interpreted.message if interpreted.message is not None else (reply.content or "")
            return self._finish(user, interpreted, message)

        logger.warning(
            "User %d: no final reply after %d iterations", user.id, self._max_iterations,
        )
        self._history.add_message(user.id, "assistant", APOLOGY_MESSAGE, created_at=self._clock())
        return APOLOGY_MESSAGE

    def _execute(self, call: FunctionCall, user_id: int) -> dict[str, Any]:
        try:
            return self._registry.execute(call.name, call.arguments, user_id)
        except Exception as exc:
            logger.error("Function %s raised for user %d: %s", call.name, user_id, exc)
            return {"error": str(exc)}

    def _finish(self, user: User, interpreted: InterpretedResponse, message: str) -> str:
        """Apply the terminal turn's side effects, persist and return the reply."""
        metadata: dict[str, Any] = {}

        if interpreted.has_final_schedule:
            self._apply_final_schedule(user, message)
            self._apply_schedule_updates(user, interpreted.schedule_updates)
        elif interpreted.has_proposed_schedule:
            # Held until the user confirms
            if interpreted.schedule_updates:
                metadata["proposedScheduleUpdates"] = interpreted.schedule_updates
        else:
            self._apply_schedule_updates(user, interpreted.schedule_updates)

        self._apply_scheduled_messages(user, interpreted.scheduled_messages)
        self._history.add_message(
            user.id, "assistant", message, metadata=metadata, created_at=self._clock(),
        )
        return message

    def _apply_final_schedule(self, user: User, message: str) -> None:
        parsed = parse_schedule(message)
        if parsed is None or not (parsed.schedule_items or parsed.notification_items):
            logger.info("Final schedule marker without parsable items for user %d", user.id)
            return
        try:
            schedule = self._schedules.create_daily_schedule(user, parsed, message)
            self._schedules.confirm_schedule(schedule.id, user)
        except Exception as exc:
            logger.error("Failed to store confirmed schedule for user %d: %s", user.id, exc)

    def _apply_schedule_updates(self, user: User, updates: list[dict[str, Any]]) -> None:
        for update in updates:
            action = update.get("action", "reschedule")
            task_id = update.get("taskId")
            if action == "create":
                name = "create_task"
                arguments = {
                    key: update[key]
                    for key in ("title", "scheduledTime", "recurrencePattern", "description")
                    if update.get(key) is not None
                }
            elif action == "complete":
                name, arguments = "update_task", {"taskId": task_id, "status": "completed"}
            elif action == "skip":
                name, arguments = "mark_task_skipped_today", {"taskId": task_id}
            elif action == "reschedule":
                name = "update_task"
                arguments = {"taskId": task_id, "scheduledTime": update.get("scheduledTime")}
            else:
                logger.warning("Ignoring schedule update with unknown action %r", action)
                continue

            result = self._registry.execute(name, arguments, user.id)
            if "error" in result:
                logger.warning("Schedule update %s failed for user %d: %s", action, user.id,
                               result["error"])

    def _apply_scheduled_messages(self, user: User, messages: list[dict[str, Any]]) -> None:
        for entry in messages:
            message_type = entry.get("type")
            arguments = {
                "type": message_type if message_type in _SCHEDULABLE_TYPES else "follow_up",
                "scheduledFor": entry.get("scheduledFor"),
                "content": entry.get("content") or entry.get("title"),
                "title": entry.get("title") or "",
            }
            task_id = entry.get("taskId") or (entry.get("metadata") or {}).get("taskId")
            if task_id is not None:
                arguments["taskId"] = task_id
            result = self._registry.execute("schedule_message", arguments, user.id)
            if "error" in result:
                logger.warning("Could not schedule message for user %d: %s", user.id, result["error"])

    # ------------------------------------------------------------------
    # System-initiated turns
    # ------------------------------------------------------------------

    async def handle_system_turn(
        self,
        user_id: int,
        request_type: str,
        details: dict[str, Any] | None = None,
    ) -> SystemReply:
        """Write a proactive message with a fixed intent. Single provider call."""
        user = self._get_user(user_id)
        details = details or {}
        turns = [
            self._system_turn(user, request_type=request_type, request_details=details),
            *self._load_history(user),
            Turn(role="user", content=f"System Request: Initiate {request_type}"),
        ]
        reply = await self._gateway.generate_completion(user.preferred_model, turns, json_mode=True)
        if reply.is_error:
            return SystemReply(message=None, failed=True)

        interpreted = interpreter.parse(reply.content, reply.tool_calls)
        if interpreted.function_call is not None and not _has_own_message(interpreted):
            # Tool calls are not executed here; fall back to the stored text
            fallback = details.get("content") or details.get("title")
            return SystemReply(message=fallback) if fallback else SystemReply(None, skip=True)
        if interpreted.message is None or not interpreted.message.strip():
            logger.info("Model skipped %s for user %d as no longer relevant", request_type, user.id)
            return SystemReply(message=None, skip=True)
        return SystemReply(message=interpreted.message)

    def remember_outbound(self, user_id: int, text: str) -> None:
        """Record a proactive message in the conversation history."""
        self._history.add_message(user_id, "assistant", text, created_at=self._clock())


def _has_own_message(interpreted: InterpretedResponse) -> bool:
    return bool(interpreted.message) and not interpreted.message.startswith("[System action:")
