"""Tests for coach.core.sweeper - dispatching due scheduled messages.

The orchestrator and the notifier are mocked; the message queue is real.
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from coach.core.orchestrator import SystemReply
from coach.core.sweeper import Sweeper


def _orchestrator(reply=None, exc=None):
    orchestrator = MagicMock()
    orchestrator.handle_system_turn = AsyncMock(
        return_value=reply or SystemReply(message="Gym in 15 minutes!"),
        side_effect=exc,
    )
    return orchestrator


def _notifier(ok=True):
    notifier = MagicMock()
    notifier.send_message = AsyncMock(return_value=ok)
    return notifier


@pytest.fixture
def due_reminder(message_db, user, clock):
    return message_db.add(
        user.id, "pre_reminder", clock() - timedelta(minutes=1),
        title="Pre-Reminder: Gym", task_id=3, local_date="2025-04-16",
        metadata={"taskId": 3, "taskTitle": "Gym", "taskScheduledTime": "12:15"},
    )


def _sweeper(message_db, user_db, clock, orchestrator=None, notifier=None):
    return Sweeper(
        message_db, user_db, orchestrator or _orchestrator(), notifier or _notifier(), clock=clock,
    )


class TestProcessPendingSchedules:
    @pytest.mark.asyncio
    async def test_sends_and_marks_sent(self, message_db, user_db, user, clock, due_reminder):
        orchestrator, notifier = _orchestrator(), _notifier()
        sweeper = _sweeper(message_db, user_db, clock, orchestrator, notifier)

        assert await sweeper.process_pending_schedules() == {"sent": 1}

        row = message_db.get(due_reminder.id)
        assert row.status == "sent"
        assert row.sent_at == "2025-04-16T12:00:00+00:00"
        notifier.send_message.assert_awaited_once_with(12345, "Gym in 15 minutes!")
        orchestrator.remember_outbound.assert_called_once_with(user.id, "Gym in 15 minutes!")

        request_type, details = orchestrator.handle_system_turn.call_args.args[1:]
        assert request_type == "task_pre_reminder"
        assert details["taskId"] == 3
        assert details["title"] == "Pre-Reminder: Gym"

    @pytest.mark.asyncio
    async def test_model_skip_cancels(self, message_db, user_db, user, clock, due_reminder):
        notifier = _notifier()
        sweeper = _sweeper(
            message_db, user_db, clock,
            _orchestrator(SystemReply(message=None, skip=True)), notifier,
        )
        assert await sweeper.process_pending_schedules() == {"cancelled": 1}
        assert message_db.get(due_reminder.id).status == "cancelled"
        notifier.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_failure_marks_failed(self, message_db, user_db, user, clock, due_reminder):
        sweeper = _sweeper(
            message_db, user_db, clock, _orchestrator(SystemReply(message=None, failed=True)),
        )
        assert await sweeper.process_pending_schedules() == {"failed": 1}
        assert message_db.get(due_reminder.id).status == "failed"

    @pytest.mark.asyncio
    async def test_delivery_failure_marks_failed(self, message_db, user_db, user, clock, due_reminder):
        sweeper = _sweeper(message_db, user_db, clock, notifier=_notifier(ok=False))
        await sweeper.process_pending_schedules()
        assert message_db.get(due_reminder.id).status == "failed"

    @pytest.mark.asyncio
    async def test_exception_marks_failed_and_continues(self, message_db, user_db, user, clock):
        first = message_db.add(user.id, "follow_up", clock() - timedelta(minutes=2))
        second = message_db.add(user.id, "follow_up", clock() - timedelta(minutes=1))
        orchestrator = _orchestrator()
        orchestrator.handle_system_turn.side_effect = [
            RuntimeError("boom"), SystemReply(message="How did it go?"),
        ]
        sweeper = _sweeper(message_db, user_db, clock, orchestrator)

        assert await sweeper.process_pending_schedules() == {"failed": 1, "sent": 1}
        assert message_db.get(first.id).status == "failed"
        assert message_db.get(second.id).status == "sent"

    @pytest.mark.asyncio
    async def test_user_without_chat_is_cancelled(self, message_db, user_db, clock):
        offline = user_db.add_user("Offline")
        msg = message_db.add(offline.id, "follow_up", clock() - timedelta(minutes=1))
        orchestrator = _orchestrator()
        sweeper = _sweeper(message_db, user_db, clock, orchestrator)

        assert await sweeper.process_pending_schedules() == {"cancelled": 1}
        assert message_db.get(msg.id).status == "cancelled"
        orchestrator.handle_system_turn.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancelled_rows_are_never_sent(self, message_db, user_db, user, clock, due_reminder):
        message_db.cancel(due_reminder.id)
        notifier = _notifier()
        sweeper = _sweeper(message_db, user_db, clock, notifier=notifier)

        assert await sweeper.process_pending_schedules() == {}
        notifier.send_message.assert_not_awaited()
        assert message_db.get(due_reminder.id).status == "cancelled"

    @pytest.mark.asyncio
    async def test_row_cancelled_while_composing_is_not_sent(self, message_db, user_db, user, clock):
        first = message_db.add(user.id, "follow_up", clock() - timedelta(minutes=2), content="A")
        second = message_db.add(user.id, "follow_up", clock() - timedelta(minutes=1), content="B")

        async def compose(user_id, request_type, details):
            if details["content"] == "A":
                message_db.cancel(second.id)
            return SystemReply(message=f"hello {details['content']}")

        orchestrator = _orchestrator()
        orchestrator.handle_system_turn = AsyncMock(side_effect=compose)
        notifier = _notifier()
        sweeper = _sweeper(message_db, user_db, clock, orchestrator, notifier)

        assert await sweeper.process_pending_schedules() == {"sent": 1, "cancelled": 1}
        notifier.send_message.assert_awaited_once_with(12345, "hello A")
        assert message_db.get(first.id).status == "sent"
        assert message_db.get(second.id).status == "cancelled"

    @pytest.mark.asyncio
    async def test_future_rows_wait(self, message_db, user_db, user, clock):
        msg = message_db.add(user.id, "reminder", clock() + timedelta(minutes=5))
        sweeper = _sweeper(message_db, user_db, clock)
        assert await sweeper.process_pending_schedules() == {}
        assert message_db.get(msg.id).status == "pending"

    @pytest.mark.asyncio
    async def test_history_failure_keeps_row_sent(self, message_db, user_db, user, clock, due_reminder):
        orchestrator = _orchestrator()
        orchestrator.remember_outbound.side_effect = RuntimeError("disk full")
        sweeper = _sweeper(message_db, user_db, clock, orchestrator)

        assert await sweeper.process_pending_schedules() == {"sent": 1}
        assert message_db.get(due_reminder.id).status == "sent"

    @pytest.mark.asyncio
    async def test_unknown_type_uses_generic_request(self, message_db, user_db, user, clock):
        message_db.add(user.id, "notification", clock(), content="Drink water")
        orchestrator = _orchestrator()
        await _sweeper(message_db, user_db, clock, orchestrator).process_pending_schedules()
        assert orchestrator.handle_system_turn.call_args.args[1] == "generic"
