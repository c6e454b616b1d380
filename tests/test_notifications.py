"""
Тесты доставки уведомлений через Telegram
"""

import pytest

pytestmark = [pytest.mark.unit]

from unittest.mock import AsyncMock

from telegram.error import TelegramError

from conftest import utc
from homework_core.services.notifications import TelegramNotificationSink, format_notification


@pytest.fixture
def mock_bot():
    """Мок Telegram бота"""
    bot = AsyncMock()
    bot.send_message = AsyncMock()
    return bot


def test_format_notification():
    text = format_notification("📅 Сдача завтра: Дроби", "Не забудь!", utc(2024, 3, 10, 23, 59))

    assert text.startswith("📅 Сдача завтра: Дроби")
    assert "Не забудь!" in text
    assert "10.03.2024 23:59" in text


@pytest.mark.asyncio
async def test_enqueue_sends_message(mock_bot):
    """
    Тест: уведомление уходит в чат пользователя
    """
    sink = TelegramNotificationSink(mock_bot)

    await sink.enqueue(101, "Заголовок", "Текст", utc(2024, 3, 10))

    mock_bot.send_message.assert_awaited_once()
    kwargs = mock_bot.send_message.call_args.kwargs
    assert kwargs["chat_id"] == 101
    assert "Заголовок" in kwargs["text"]


@pytest.mark.asyncio
async def test_enqueue_propagates_telegram_error(mock_bot):
    """
    Тест: ошибка Telegram пробрасывается (её учитывает проход напоминаний)
    """
    mock_bot.send_message.side_effect = TelegramError("Forbidden: bot was blocked by the user")
    sink = TelegramNotificationSink(mock_bot)

    with pytest.raises(TelegramError):
        await sink.enqueue(101, "Заголовок", "Текст", utc(2024, 3, 10))


@pytest.mark.asyncio
async def test_blocked_user_counted_as_failed(store, homework, clock, mock_bot):
    """
    Тест: заблокировавший бота ученик не мешает остальным
    """
    from datetime import timedelta
    from homework_core.services.reminders import ReminderScheduler

    async def send(chat_id, text):
        if chat_id == 102:
            raise TelegramError("Forbidden")

    mock_bot.send_message.side_effect = send
    reminders = ReminderScheduler(
        homework=store, submissions=store, reminders=store,
        sink=TelegramNotificationSink(mock_bot), clock=clock,
    )

    result = await reminders.sweep(now=utc(2024, 3, 10, 22, 59, 59) + timedelta(minutes=1))

    assert result.reminders_created == 3
    assert await reminders.drain() == 1
