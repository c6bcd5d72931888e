"""Tests for coach.core.interpreter - structured reading of assistant turns."""

import json

from coach.core.interpreter import (
    MULTIPLE_CALLS_ERROR,
    parse,
    strip_code_fence,
)
from coach.core.llm import ToolCall


# ---------------------------------------------------------------------------
# Fence stripping
# ---------------------------------------------------------------------------


class TestStripCodeFence:
    def test_json_fence(self):
        assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_plain_fence(self):
        assert strip_code_fence('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_no_fence(self):
        assert strip_code_fence('  {"a": 1}  ') == '{"a": 1}'


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class TestMessage:
    def test_plain_json_message(self):
        result = parse('{"message": "Nice work today!"}')
        assert result.message == "Nice work today!"
        assert result.function_call is None
        assert result.protocol_error is None

    def test_non_json_text_is_kept_verbatim(self):
        result = parse("Sure, I can help with that.")
        assert result.message == "Sure, I can help with that."

    def test_invalid_json_falls_back_to_raw_text(self):
        raw = '{"message": "oops",}'
        assert parse(raw).message == raw

    def test_fenced_json(self):
        assert parse('```json\n{"message": "hi"}\n```').message == "hi"

    def test_explicit_null_message_is_none(self):
        assert parse('{"message": null}').message is None

    def test_json_without_message_keeps_raw_text(self):
        raw = '{"note": "something"}'
        assert parse(raw).message == raw

    def test_empty_reply(self):
        assert parse(None).message is None


# ---------------------------------------------------------------------------
# Function calls
# ---------------------------------------------------------------------------


class TestFunctionCall:
    def test_json_function_call(self):
        raw = json.dumps({
            "function_call": {"name": "create_task", "arguments": {"title": "Gym"}},
        })
        result = parse(raw)
        assert result.function_call.name == "create_task"
        assert result.function_call.arguments == {"title": "Gym"}
        assert result.message == "[System action: Calling function 'create_task']"

    def test_message_kept_alongside_call(self):
        raw = json.dumps({
            "message": "Let me check.",
            "function_call": {"name": "get_task_list", "arguments": {}},
        })
        result = parse(raw)
        assert result.message == "Let me check."
        assert result.function_call.name == "get_task_list"

    def test_double_encoded_arguments(self):
        raw = json.dumps({
            "function_call": {"name": "delete_task", "arguments": '{"taskId": 3}'},
        })
        assert parse(raw).function_call.arguments == {"taskId": 3}

    def test_malformed_call_is_dropped(self):
        raw = json.dumps({"message": "ok", "function_call": {"name": "", "arguments": {}}})
        result = parse(raw)
        assert result.function_call is None
        assert result.message == "ok"

    def test_arguments_must_be_object(self):
        raw = json.dumps({"function_call": {"name": "x", "arguments": [1, 2]}})
        assert parse(raw).function_call is None

    def test_native_tool_call(self):
        call = ToolCall(id="c1", name="get_task_list", arguments='{"status": "active"}')
        result = parse(None, [call])
        assert result.function_call.name == "get_task_list"
        assert result.function_call.tool_call_id == "c1"
        assert result.message == "[System action: Calling function 'get_task_list']"

    def test_native_tool_call_with_bad_json_is_dropped(self):
        result = parse("thinking", [ToolCall(id="c1", name="x", arguments="{nope")])
        assert result.function_call is None
        assert result.message == "thinking"


class TestMultipleCalls:
    def test_json_call_plus_native_call(self):
        raw = json.dumps({"function_call": {"name": "a", "arguments": {}}})
        result = parse(raw, [ToolCall(id="c1", name="b")])
        assert result.protocol_error == MULTIPLE_CALLS_ERROR
        assert result.function_call is None

    def test_json_list_of_calls(self):
        raw = json.dumps({"function_call": [
            {"name": "a", "arguments": {}},
            {"name": "b", "arguments": {}},
        ]})
        assert parse(raw).protocol_error == MULTIPLE_CALLS_ERROR

    def test_two_native_calls(self):
        result = parse(None, [ToolCall(id="1", name="a"), ToolCall(id="2", name="b")])
        assert result.protocol_error == MULTIPLE_CALLS_ERROR

    def test_single_call_in_list_is_accepted(self):
        raw = json.dumps({"function_call": [{"name": "a", "arguments": {}}]})
        result = parse(raw)
        assert result.protocol_error is None
        assert result.function_call.name == "a"


# ---------------------------------------------------------------------------
# Schedule side-channel
# ---------------------------------------------------------------------------


class TestScheduleFields:
    def test_updates_and_messages_are_extracted(self):
        raw = json.dumps({
            "message": "Done.",
            "scheduleUpdates": [{"taskId": 1, "action": "skip"}, "junk"],
            "scheduledMessages": [{"type": "follow_up", "scheduledFor": "18:00"}],
        })
        result = parse(raw)
        assert result.schedule_updates == [{"taskId": 1, "action": "skip"}]
        assert result.scheduled_messages[0]["scheduledFor"] == "18:00"

    def test_markers(self):
        final = parse(json.dumps({"message": "The final schedule is as follows:\n- 09:30 Gym"}))
        proposed = parse(json.dumps({"message": "Here's a plan\nPROPOSED_SCHEDULE_AWAITING_CONFIRMATION"}))
        assert final.has_final_schedule and not final.has_proposed_schedule
        assert proposed.has_proposed_schedule and not proposed.has_final_schedule
