"""
Coach Assistant - Response Interpreter.

Turns the raw text of an assistant turn into a structured reply:

    {
        "message": "text for the user",
        "function_call": {"name": "create_task", "arguments": {...}},
        "scheduleUpdates": [...],
        "scheduledMessages": [...]
    }

Models are not always obedient, so the rules are forgiving: fenced code
blocks are unwrapped, non-JSON text becomes the message as-is, and a
malformed function call is dropped with a warning. Content is never lost.
Requesting more than one function call in a single turn is the one thing
that is not tolerated; it is flagged so the loop can push back.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from coach.core.llm import ToolCall

logger = logging.getLogger(__name__)

# Markers the model uses to signal a schedule. Matched verbatim.
FINAL_SCHEDULE_MARKER = "The final schedule is as follows:"
PROPOSED_SCHEDULE_MARKER = "PROPOSED_SCHEDULE_AWAITING_CONFIRMATION"

MULTIPLE_CALLS_ERROR = (
    "Only one function call per turn is allowed. "
    "Call the functions one at a time and wait for each result."
)


@dataclass
class FunctionCall:
    name: str
    arguments: dict[str, Any]
    tool_call_id: str | None = None    # set when it came from a native tool call


@dataclass
class InterpretedResponse:
    message: str | None
    function_call: FunctionCall | None = None
    schedule_updates: list[dict[str, Any]] = field(default_factory=list)
    scheduled_messages: list[dict[str, Any]] = field(default_factory=list)
    protocol_error: str | None = None

    @property
    def has_final_schedule(self) -> bool:
        return bool(self.message) and FINAL_SCHEDULE_MARKER in self.message

    @property
    def has_proposed_schedule(self) -> bool:
        return bool(self.message) and PROPOSED_SCHEDULE_MARKER in self.message


def strip_code_fence(raw_text: str) -> str:
    """Remove one layer of ```json / ``` fencing from a model reply."""
    cleaned = raw_text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned.removeprefix("```json")
    elif cleaned.startswith("```"):
        cleaned = cleaned.removeprefix("```")
    else:
        return cleaned
    if cleaned.endswith("```"):
        cleaned = cleaned.removesuffix("```")
    return cleaned.strip()


def _coerce_function_call(raw: Any) -> FunctionCall | None:
    """Accept only {"name": <non-empty str>, "arguments": <object>}."""
    if not isinstance(raw, dict):
        logger.warning("Ignoring function_call that is not an object: %r", raw)
        return None
    name = raw.get("name")
    arguments = raw.get("arguments")
    if isinstance(arguments, str):
        # Some models double-encode the arguments object
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError:
            pass
    if not isinstance(name, str) or not name.strip() or not isinstance(arguments, dict):
        logger.warning("Ignoring malformed function_call: %r", raw)
        return None
    return FunctionCall(name=name.strip(), arguments=arguments)


def _from_tool_call(call: ToolCall) -> FunctionCall | None:
    try:
        arguments = json.loads(call.arguments or "{}")
    except json.JSONDecodeError:
        logger.warning("Ignoring tool call %s with invalid JSON arguments", call.name)
        return None
    coerced = _coerce_function_call({"name": call.name, "arguments": arguments})
    if coerced is not None:
        coerced.tool_call_id = call.id
    return coerced


def _as_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def parse(raw_text: str | None, tool_calls: list[ToolCall] | None = None) -> InterpretedResponse:
    """Interpret an assistant turn.

    Args:
        raw_text: The turn's text content (may be None for pure tool calls).
        tool_calls: Native tool calls attached to the same turn, if any.
    """
    tool_calls = tool_calls or []
    original = raw_text or ""
    cleaned = strip_code_fence(original)

    data: Any = None
    if cleaned.startswith("{") and cleaned.endswith("}"):
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError as exc:
            logger.warning("Assistant reply is not valid JSON (%s); using raw text", exc)

    if not isinstance(data, dict):
        if len(tool_calls) > 1:
            return InterpretedResponse(message=original or None, protocol_error=MULTIPLE_CALLS_ERROR)
        call = _from_tool_call(tool_calls[0]) if tool_calls else None
        message = original or None
        if message is None and call is not None:
            message = f"[System action: Calling function '{call.name}']"
        return InterpretedResponse(message=message, function_call=call)

    # -- Function call: at most one, from JSON or from native tool calls --
    raw_call = data.get("function_call")
    json_calls = 0
    if isinstance(raw_call, list):
        json_calls = len(raw_call)
        raw_call = raw_call[0] if len(raw_call) == 1 else None
    elif raw_call is not None:
        json_calls = 1
    if isinstance(data.get("function_calls"), list):
        json_calls += len(data["function_calls"])

    raw_message = data.get("message")
    usable_message = raw_message if isinstance(raw_message, str) and raw_message.strip() else None
    schedule_updates = _as_list(data.get("scheduleUpdates"))
    scheduled_messages = _as_list(data.get("scheduledMessages"))

    if json_calls + len(tool_calls) > 1:
        logger.warning("Assistant requested multiple function calls in one turn")
        return InterpretedResponse(
            message=usable_message or original,
            schedule_updates=schedule_updates,
            scheduled_messages=scheduled_messages,
            protocol_error=MULTIPLE_CALLS_ERROR,
        )

    call: FunctionCall | None = None
    if raw_call is not None:
        call = _coerce_function_call(raw_call)
    elif tool_calls:
        call = _from_tool_call(tool_calls[0])

    if usable_message is not None:
        message: str | None = usable_message
    elif call is not None:
        message = f"[System action: Calling function '{call.name}']"
    elif "message" in data and raw_message is None:
        # Explicit null: the model decided there is nothing to say
        message = None
    else:
        message = original

    return InterpretedResponse(
        message=message,
        function_call=call,
        schedule_updates=schedule_updates,
        scheduled_messages=scheduled_messages,
    )
