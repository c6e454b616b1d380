"""
Отправка уведомлений пользователям через Telegram
"""

import logging
from datetime import datetime

from telegram import Bot
from telegram.error import TelegramError

logger = logging.getLogger(__name__)


def format_notification(title: str, message: str, due_date: datetime) -> str:
    """Текст сообщения с дедлайном"""
    return (
        f"{title}\n\n"
        f"{message}\n\n"
        f"Дедлайн: {due_date.strftime('%d.%m.%Y %H:%M')} UTC"
    )


class TelegramNotificationSink:
    """
    Доставка запросов на уведомление через Telegram.
    ID пользователя — это его Telegram chat_id.
    """

    def __init__(self, bot: Bot):
        self.bot = bot

    async def enqueue(self, user_id: int, title: str, message: str, due_date: datetime):
        """Отправка напоминания; ошибка Telegram пробрасывается вызывающему"""
        try:
            await self.bot.send_message(
                chat_id=user_id,
                text=format_notification(title, message, due_date),
            )
        except TelegramError as e:
            logger.warning(f"Telegram: не удалось доставить уведомление {user_id}: {e}")
            raise
