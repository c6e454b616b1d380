"""
Главная точка входа — фоновый процесс напоминаний
"""

import asyncio
import logging
import signal
from dataclasses import dataclass

from telegram import Bot

from homework_core.clock import SystemClock
from homework_core.config import config
from homework_core.database import queries as db
from homework_core.database.connection import get_pool, close_pool
from homework_core.database.migrations import run_migrations
from homework_core.services.gamification import GamificationEngine
from homework_core.services.notifications import TelegramNotificationSink
from homework_core.services.reminders import ReminderScheduler
from homework_core.services.reports import ReportAggregator
from homework_core.services.scheduler import create_scheduler, start_scheduler, shutdown_scheduler
from homework_core.services.submissions import SubmissionTracker


# Настройка логирования
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO
)
logger = logging.getLogger(__name__)


@dataclass
class Core:
    """Собранные сервисы ядра — их вызывает внешний (web) слой"""
    submissions: SubmissionTracker
    reminders: ReminderScheduler
    gamification: GamificationEngine
    reports: ReportAggregator


def build_core(store, sink, clock=None) -> Core:
    """
    Собрать сервисы поверх хранилища (модуль queries или MemoryStore)
    и подписать геймификацию на события сдачи.
    """
    clock = clock or SystemClock()
    tracker = SubmissionTracker(homework=store, submissions=store, clock=clock)
    engine = GamificationEngine(challenges=store, ledger=store, stats=store, badges=store, clock=clock)
    tracker.add_listener(engine.handle_event)

    return Core(
        submissions=tracker,
        reminders=ReminderScheduler(
            homework=store,
            submissions=store,
            reminders=store,
            sink=sink,
            clock=clock,
        ),
        gamification=engine,
        reports=ReportAggregator(homework=store, submissions=store, reports=store, clock=clock),
    )


async def run():
    """Подключение к БД, запуск планировщика, ожидание сигнала остановки"""
    await get_pool()
    await run_migrations()
    logger.info("База данных подключена, миграции выполнены")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: остаётся KeyboardInterrupt
            pass

    bot = Bot(config.BOT_TOKEN)
    async with bot:
        core = build_core(db, TelegramNotificationSink(bot))
        await core.gamification.load_levels()

        scheduler = create_scheduler(core.reminders)
        start_scheduler(scheduler)
        try:
            await stop.wait()
        finally:
            shutdown_scheduler(scheduler)
            failures = await core.reminders.drain()
            if failures:
                logger.warning(f"Не доставлено напоминаний за время работы: {failures}")
            await close_pool()
            logger.info("Соединение с БД закрыто")


def main():
    """Запуск"""

    # Проверка конфигурации
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Ошибка конфигурации: {error}")
        return

    logger.info("Планировщик напоминаний запущен!")
    asyncio.run(run())


if __name__ == "__main__":
    main()
