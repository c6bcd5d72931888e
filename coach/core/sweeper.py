"""
Coach Assistant - Pending-Dispatch Sweeper.

Each tick picks up every pending scheduled message whose time has come,
has the model write it (a system-initiated turn with a fixed intent),
sends it and records the outcome. After an attempt a row is always
sent, failed or cancelled. Failed rows are not retried; they stay in the
table for inspection.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING

from coach.core.timeutil import Clock, utcnow

if TYPE_CHECKING:
    from coach.core.orchestrator import Orchestrator
    from coach.data.db import ScheduledMessageDB, UserDB
    from coach.data.models import ScheduledMessage
    from coach.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

# Scheduled message type → system request type
SYSTEM_REQUEST_TYPES: dict[str, str] = {
    "morning_message": "morning_summary",
    "reminder": "task_reminder",
    "pre_reminder": "task_pre_reminder",
    "post_reminder_follow_up": "task_post_reminder_follow_up",
    "follow_up": "task_follow_up",
}


def _request_details(message: ScheduledMessage) -> dict:
    details = dict(message.metadata)
    if message.task_id is not None:
        details.setdefault("taskId", message.task_id)
    details["title"] = message.title
    details["content"] = message.content
    return details


class Sweeper:
    """Dispatches due scheduled messages through the notifier."""

    def __init__(
        self,
        message_db: ScheduledMessageDB,
        user_db: UserDB,
        orchestrator: Orchestrator,
        notifier: NotificationPort,
        clock: Clock = utcnow,
    ) -> None:
        self._messages = message_db
        self._users = user_db
        self._orchestrator = orchestrator
        self._notifier = notifier
        self._clock = clock

    async def process_pending_schedules(self) -> dict[str, int]:
        """Dispatch every due pending row. Returns a count per outcome."""
        due = self._messages.list_due(self._clock())
        outcomes: Counter[str] = Counter()
        for message in due:
            try:
                outcome = await self._dispatch(message)
            except Exception as exc:
                logger.error("Scheduled message #%d failed: %s", message.id, exc)
                outcome = "failed"
            if outcome == "failed":
                self._messages.set_status(message.id, "failed")
            outcomes[outcome] += 1

        if due:
            logger.info("Sweeper processed %d message(s): %s", len(due), dict(outcomes))
        return dict(outcomes)

    async def _dispatch(self, message: ScheduledMessage) -> str:
        user = self._users.get_user(message.user_id)
        if user is None or user.chat_id is None:
            logger.warning(
                "Cancelling scheduled message #%d: user %d has no chat address",
                message.id, message.user_id,
            )
            self._messages.set_status(message.id, "cancelled")
            return "cancelled"

        request_type = SYSTEM_REQUEST_TYPES.get(message.message_type, "generic")
        reply = await self._orchestrator.handle_system_turn(
            user.id, request_type, _request_details(message),
        )
        if reply.failed:
            logger.error("Could not generate scheduled message #%d", message.id)
            return "failed"
        if reply.skip or not reply.message:
            logger.info("Scheduled message #%d no longer relevant, cancelling", message.id)
            self._messages.set_status(message.id, "cancelled")
            return "cancelled"

        # The row may have been cancelled while the model was writing it.
        # No await between this read and the send call.
        current = self._messages.get(message.id)
        if current is None or current.status != "pending":
            logger.info(
                "Scheduled message #%d is %s, not sending",
                message.id, current.status if current else "gone",
            )
            return "cancelled"

        if not await self._notifier.send_message(user.chat_id, reply.message):
            logger.error("Delivery of scheduled message #%d failed", message.id)
            return "failed"

        if not self._messages.mark_sent(message.id, self._clock()):
            logger.warning(
                "Scheduled message #%d changed status during delivery; it was sent", message.id,
            )
        try:
            self._orchestrator.remember_outbound(user.id, reply.message)
        except Exception as exc:
            # Already delivered; the row must stay sent
            logger.error("Could not record message #%d in history: %s", message.id, exc)
        logger.info("Scheduled %s #%d sent to user %d", message.message_type, message.id, user.id)
        return "sent"
