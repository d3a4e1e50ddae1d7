"""
Доставка событий в Telegram
"""

import asyncio
import logging

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError

from .events import EventEmitter

logger = logging.getLogger(__name__)


class TelegramEmitter(EventEmitter):
    """
    Уведомления и напоминания -> личные сообщения пользователям

    emit синхронный, поэтому отправка идёт фоновой задачей.
    """

    def __init__(self, bot: Bot):
        self.bot = bot
        self._tasks = set()

    def emit(self, event_name: str, payload: dict) -> None:
        if event_name != "notification":
            return
        text = f"{payload['title']}\n\n{payload['message']}"
        task = asyncio.ensure_future(self._send(payload["user_id"], text))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, user_id: int, text: str) -> None:
        try:
            await self.bot.send_message(user_id, text)
        except TelegramAPIError:
            # пользователь мог заблокировать бота, уведомление остаётся в базе
            logger.warning("Не удалось доставить уведомление пользователю %s", user_id)
