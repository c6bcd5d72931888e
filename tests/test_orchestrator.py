"""Tests for coach.core.orchestrator - the conversation loop.

The provider gateway is a scripted fake; stores and the function registry
are real, backed by a temp SQLite file.
"""

import json

import pytest
from unittest.mock import MagicMock

from coach.core.functions import FUNCTION_DECLARATIONS
from coach.core.llm import ToolCall, Turn, error_turn
from coach.core.orchestrator import APOLOGY_MESSAGE, Orchestrator
from coach.core.schedule_parser import ScheduleService


class ScriptedGateway:
    """Returns the scripted turns in order, repeating the last one forever."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    async def generate_completion(self, model, turns, temperature=None, json_mode=False, functions=None):
        self.calls.append({"turns": list(turns), "json_mode": json_mode, "functions": functions})
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


def _reply(**payload):
    return Turn(role="assistant", content=json.dumps(payload))


@pytest.fixture
def make_orchestrator(registry, user_db, task_db, fact_db, history_db, schedule_db, message_db, clock):
    def _make(gateway, registry_override=None):
        return Orchestrator(
            gateway=gateway,
            registry=registry_override or registry,
            user_db=user_db,
            task_db=task_db,
            fact_db=fact_db,
            history_db=history_db,
            schedule_service=ScheduleService(schedule_db, task_db, message_db, clock=clock),
            clock=clock,
            max_iterations=25,
            history_limit=20,
        )
    return _make


# ---------------------------------------------------------------------------
# Basic replies
# ---------------------------------------------------------------------------


class TestUserTurn:
    @pytest.mark.asyncio
    async def test_plain_reply_is_returned_and_persisted(self, make_orchestrator, user, history_db):
        gateway = ScriptedGateway(_reply(message="Hello Dana!"))
        reply = await make_orchestrator(gateway).handle_user_turn(user.id, "hi")

        assert reply == "Hello Dana!"
        stored = [(m.role, m.content) for m in reversed(history_db.recent(user.id))]
        assert stored == [("user", "hi"), ("assistant", "Hello Dana!")]

    @pytest.mark.asyncio
    async def test_prompt_shape(self, make_orchestrator, user):
        gateway = ScriptedGateway(_reply(message="ok"))
        await make_orchestrator(gateway).handle_user_turn(user.id, "plan my day")

        call = gateway.calls[0]
        assert call["json_mode"] is True
        assert call["functions"] == FUNCTION_DECLARATIONS
        assert call["turns"][0].role == "system"
        assert call["turns"][-1] == Turn(role="user", content="plan my day")

    @pytest.mark.asyncio
    async def test_history_is_timestamped_and_chronological(
        self, make_orchestrator, user, history_db, clock,
    ):
        history_db.add_message(user.id, "user", "first", created_at=clock())
        history_db.add_message(user.id, "assistant", "second", created_at=clock())
        gateway = ScriptedGateway(_reply(message="ok"))
        await make_orchestrator(gateway).handle_user_turn(user.id, "third")

        contents = [t.content for t in gateway.calls[0]["turns"][1:]]
        assert contents == ["(Apr 16, 12:00 PM) first", "(Apr 16, 12:00 PM) second", "third"]

    @pytest.mark.asyncio
    async def test_non_json_reply_is_used_verbatim(self, make_orchestrator, user):
        gateway = ScriptedGateway(Turn(role="assistant", content="Just plain text."))
        assert await make_orchestrator(gateway).handle_user_turn(user.id, "hi") == "Just plain text."

    @pytest.mark.asyncio
    async def test_provider_failure_sentinel_is_shown(self, make_orchestrator, user):
        gateway = ScriptedGateway(error_turn("OpenAI"))
        reply = await make_orchestrator(gateway).handle_user_turn(user.id, "hi")
        assert reply == "Sorry, I encountered an error communicating with the OpenAI service."

    @pytest.mark.asyncio
    async def test_unknown_user_raises(self, make_orchestrator):
        with pytest.raises(ValueError):
            await make_orchestrator(ScriptedGateway(_reply(message="x"))).handle_user_turn(999, "hi")


# ---------------------------------------------------------------------------
# Function calls
# ---------------------------------------------------------------------------


class TestFunctionLoop:
    @pytest.mark.asyncio
    async def test_call_then_answer(self, make_orchestrator, user, task_db):
        gateway = ScriptedGateway(
            _reply(function_call={"name": "create_task",
                                  "arguments": {"title": "Gym", "scheduledTime": "18:00"}}),
            _reply(message="Added Gym at 18:00."),
        )
        reply = await make_orchestrator(gateway).handle_user_turn(user.id, "gym at 6pm")

        assert reply == "Added Gym at 18:00."
        assert [t.title for t in task_db.list_tasks(user.id)] == ["Gym"]

        second = gateway.calls[1]["turns"]
        function_turn = second[-1]
        assert function_turn.role == "function"
        assert function_turn.name == "create_task"
        assert json.loads(function_turn.content)["success"] is True
        assert "FUNCTION EXECUTION RESULTS" in second[0].content

    @pytest.mark.asyncio
    async def test_native_tool_call_keeps_its_id(self, make_orchestrator, user):
        call = ToolCall(id="call_1", name="get_task_list", arguments="{}")
        gateway = ScriptedGateway(
            Turn(role="assistant", content=None, tool_calls=[call]),
            _reply(message="You have no tasks."),
        )
        await make_orchestrator(gateway).handle_user_turn(user.id, "what's on?")

        second = gateway.calls[1]["turns"]
        assert second[-2].tool_calls == [call]
        assert second[-1].tool_call_id == "call_1"

    @pytest.mark.asyncio
    async def test_never_exceeds_max_iterations(self, make_orchestrator, user, history_db):
        gateway = ScriptedGateway(
            _reply(function_call={"name": "get_task_list", "arguments": {}}),
        )
        reply = await make_orchestrator(gateway).handle_user_turn(user.id, "loop forever")

        assert reply == APOLOGY_MESSAGE
        assert len(gateway.calls) == 25
        assert history_db.recent(user.id, limit=1)[0].content == APOLOGY_MESSAGE

    @pytest.mark.asyncio
    async def test_throwing_handler_becomes_error_turn(self, make_orchestrator, user):
        broken = MagicMock()
        broken.declarations = FUNCTION_DECLARATIONS
        broken.execute.side_effect = RuntimeError("database is locked")
        gateway = ScriptedGateway(
            _reply(function_call={"name": "get_task_list", "arguments": {}}),
            _reply(message="Sorry, something went wrong on my side."),
        )
        reply = await make_orchestrator(gateway, registry_override=broken).handle_user_turn(
            user.id, "list my tasks",
        )

        assert reply == "Sorry, something went wrong on my side."
        function_turn = gateway.calls[1]["turns"][-1]
        assert function_turn.role == "function"
        assert json.loads(function_turn.content) == {"error": "database is locked"}

    @pytest.mark.asyncio
    async def test_multiple_calls_get_pushback(self, make_orchestrator, user, task_db):
        gateway = ScriptedGateway(
            Turn(role="assistant", content=None, tool_calls=[
                ToolCall(id="1", name="create_task", arguments='{"title": "A"}'),
                ToolCall(id="2", name="create_task", arguments='{"title": "B"}'),
            ]),
            _reply(message="One at a time, got it."),
        )
        await make_orchestrator(gateway).handle_user_turn(user.id, "add A and B")

        pushback = gateway.calls[1]["turns"][-1]
        assert pushback.name == "function_call_error"
        assert "Only one function call" in json.loads(pushback.content)["error"]
        assert task_db.list_tasks(user.id) == []


# ---------------------------------------------------------------------------
# Terminal side effects
# ---------------------------------------------------------------------------


class TestTerminalEffects:
    @pytest.mark.asyncio
    async def test_final_schedule_is_stored_and_confirmed(
        self, make_orchestrator, user, task_db, schedule_db, message_db,
    ):
        task = task_db.add_task(user.id, "Draft report")
        message = (
            "The final schedule is as follows:\n"
            f"- 1:30 PM: Draft report (Task ID: {task.id})\n"
            "- 3:00 PM: Reminder - stretch"
        )
        gateway = ScriptedGateway(_reply(message=message))
        await make_orchestrator(gateway).handle_user_turn(user.id, "yes, looks good")

        schedule = schedule_db.get_confirmed_for_date(user.id, "2025-04-16")
        assert schedule is not None
        assert schedule.items[0].task_id == task.id
        pending = message_db.list_for_user(user.id, status="pending")
        assert [(m.message_type, m.content) for m in pending] == [("reminder", "stretch")]

    @pytest.mark.asyncio
    async def test_proposed_schedule_updates_are_held(
        self, make_orchestrator, user, task_db, history_db, event_db,
    ):
        task = task_db.add_task(user.id, "Gym", scheduled_time="18:00")
        updates = [{"taskId": task.id, "action": "skip"}]
        gateway = ScriptedGateway(_reply(
            message="How about skipping gym today?\nPROPOSED_SCHEDULE_AWAITING_CONFIRMATION",
            scheduleUpdates=updates,
        ))
        await make_orchestrator(gateway).handle_user_turn(user.id, "I'm tired")

        assert not event_db.has_event(task.id, "skipped_today", "2025-04-16")
        assert history_db.recent(user.id, limit=1)[0].metadata == {"proposedScheduleUpdates": updates}

    @pytest.mark.asyncio
    async def test_schedule_updates_applied(self, make_orchestrator, user, task_db, event_db):
        skip = task_db.add_task(user.id, "Gym", scheduled_time="18:00")
        move = task_db.add_task(user.id, "Read", scheduled_time="21:00")
        gateway = ScriptedGateway(_reply(
            message="Done.",
            scheduleUpdates=[
                {"taskId": skip.id, "action": "skip"},
                {"taskId": move.id, "action": "reschedule", "scheduledTime": "20:00"},
                {"action": "create", "title": "Walk", "scheduledTime": "17:00"},
            ],
        ))
        await make_orchestrator(gateway).handle_user_turn(user.id, "adjust please")

        assert event_db.has_event(skip.id, "skipped_today", "2025-04-16")
        assert task_db.get_task(move.id).scheduled_time == "20:00"
        assert "Walk" in [t.title for t in task_db.list_tasks(user.id)]

    @pytest.mark.asyncio
    async def test_scheduled_messages_are_queued(self, make_orchestrator, user, message_db):
        gateway = ScriptedGateway(_reply(
            message="I'll check in later.",
            scheduledMessages=[{"type": "check_in", "scheduledFor": "18:00",
                                "content": "How was the gym?"}],
        ))
        await make_orchestrator(gateway).handle_user_turn(user.id, "going to the gym")

        pending = message_db.list_for_user(user.id, status="pending")
        assert len(pending) == 1
        assert pending[0].message_type == "check_in"
        assert pending[0].scheduled_for == "2025-04-16T18:00:00+00:00"


# ---------------------------------------------------------------------------
# System-initiated turns
# ---------------------------------------------------------------------------


class TestSystemTurn:
    @pytest.mark.asyncio
    async def test_writes_message(self, make_orchestrator, user):
        gateway = ScriptedGateway(_reply(message="Gym in 15 minutes!"))
        result = await make_orchestrator(gateway).handle_system_turn(
            user.id, "task_pre_reminder", {"taskId": 1, "taskTitle": "Gym"},
        )

        assert result.message == "Gym in 15 minutes!"
        assert not result.skip and not result.failed
        turns = gateway.calls[0]["turns"]
        assert turns[-1].content == "System Request: Initiate task_pre_reminder"
        assert 'PRE-REMINDER for task "Gym" (ID: 1)' in turns[0].content

    @pytest.mark.asyncio
    async def test_null_message_means_skip(self, make_orchestrator, user):
        gateway = ScriptedGateway(_reply(message=None))
        result = await make_orchestrator(gateway).handle_system_turn(user.id, "task_reminder")
        assert result.skip is True
        assert result.message is None

    @pytest.mark.asyncio
    async def test_provider_failure_is_flagged(self, make_orchestrator, user):
        gateway = ScriptedGateway(error_turn("Anthropic"))
        result = await make_orchestrator(gateway).handle_system_turn(user.id, "morning_summary")
        assert result.failed is True

    @pytest.mark.asyncio
    async def test_function_call_falls_back_to_stored_content(self, make_orchestrator, user):
        gateway = ScriptedGateway(_reply(function_call={"name": "get_task_list", "arguments": {}}))
        result = await make_orchestrator(gateway).handle_system_turn(
            user.id, "task_follow_up", {"content": "How did it go?"},
        )
        assert result.message == "How did it go?"

    def test_remember_outbound(self, make_orchestrator, user, history_db):
        make_orchestrator(ScriptedGateway(_reply(message="x"))).remember_outbound(user.id, "Reminder!")
        latest = history_db.recent(user.id, limit=1)[0]
        assert (latest.role, latest.content) == ("assistant", "Reminder!")
