"""Notification port: the outbound gateway interface.

Core modules depend on this protocol, never on a specific messaging provider.
"""

from __future__ import annotations

from typing import Protocol


class NotificationPort(Protocol):
    """Abstract outbound gateway used by the sweeper and the bot.

    Returns True when the message was handed to the channel.
    """

    async def send_message(self, chat_id: int, text: str) -> bool: ...
