"""Tests for coach.adapters.telegram_notifier - outbound Telegram delivery."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from telegram.error import TelegramError

from coach.adapters.telegram_notifier import TRUNCATION_NOTICE, TelegramNotifier, truncate_message


class TestTruncateMessage:
    def test_short_text_untouched(self):
        assert truncate_message("hello", 100) == "hello"

    def test_long_text_cut_with_notice(self):
        result = truncate_message("x" * 2000, 1500)
        assert len(result) == 1500
        assert result.endswith(TRUNCATION_NOTICE)


class TestTelegramNotifier:
    @pytest.mark.asyncio
    async def test_send_success(self):
        bot = MagicMock()
        bot.send_message = AsyncMock()
        notifier = TelegramNotifier(bot, max_length=1500)

        assert await notifier.send_message(12345, "Hi!") is True
        bot.send_message.assert_awaited_once_with(chat_id=12345, text="Hi!")

    @pytest.mark.asyncio
    async def test_send_truncates(self):
        bot = MagicMock()
        bot.send_message = AsyncMock()
        notifier = TelegramNotifier(bot, max_length=100)

        await notifier.send_message(12345, "y" * 500)
        sent = bot.send_message.call_args.kwargs["text"]
        assert len(sent) == 100

    @pytest.mark.asyncio
    async def test_telegram_error_returns_false(self):
        bot = MagicMock()
        bot.send_message = AsyncMock(side_effect=TelegramError("Forbidden: bot was blocked"))
        notifier = TelegramNotifier(bot, max_length=1500)

        assert await notifier.send_message(12345, "Hi!") is False

    def test_default_max_length_from_settings(self):
        notifier = TelegramNotifier(MagicMock())
        assert notifier._max_length == 1500
