"""Telegram notification adapter, implements NotificationPort.

Wraps a telegram.Bot instance. Long texts are cut to the configured
ceiling with a visible notice; delivery errors are reported as False.
"""

from __future__ import annotations

import logging

from telegram import Bot
from telegram.error import TelegramError

logger = logging.getLogger(__name__)

TRUNCATION_NOTICE = "\n\n[Message truncated due to length]"


def truncate_message(text: str, max_length: int) -> str:
    """Fit `text` into `max_length` characters, notice included."""
    if len(text) <= max_length:
        return text
    keep = max(max_length - len(TRUNCATION_NOTICE), 0)
    return text[:keep] + TRUNCATION_NOTICE


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot, max_length: int | None = None) -> None:
        if max_length is None:
            from coach.config import settings
            max_length = settings.MAX_MESSAGE_LENGTH
        self._bot = bot
        self._max_length = max_length

    async def send_message(self, chat_id: int, text: str) -> bool:
        body = truncate_message(text, self._max_length)
        if len(text) > self._max_length:
            logger.warning("Message to chat %d truncated from %d chars", chat_id, len(text))
        try:
            await self._bot.send_message(chat_id=chat_id, text=body)
        except TelegramError as exc:
            logger.error("Failed to send message to chat %d: %s", chat_id, exc)
            return False
        return True
