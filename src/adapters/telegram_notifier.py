"""Telegram notification adapter, implements NotificationPort.

Wraps a telegram.Bot instance to satisfy the NotificationPort protocol.
"""

from __future__ import annotations

import logging

from telegram import Bot

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(
        self, chat_id: int, text: str, thread_id: int | None = None
    ) -> None:
        await self._bot.send_message(
            chat_id=chat_id, text=text, message_thread_id=thread_id,
        )
