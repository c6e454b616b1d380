"""
Планировщик задач — проход напоминаний, очистка старых напоминаний
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from homework_core.config import config
from homework_core.services.reminders import ReminderScheduler

logger = logging.getLogger(__name__)


async def run_sweep(reminders: ReminderScheduler):
    """Job: проход напоминаний. Ошибки не роняют планировщик."""
    try:
        await reminders.sweep()
    except Exception as e:
        logger.error(f"Scheduler error in run_sweep: {e}")


async def run_cleanup(reminders: ReminderScheduler):
    """Job: очистка старых напоминаний"""
    try:
        await reminders.cleanup()
    except Exception as e:
        logger.error(f"Scheduler error in run_cleanup: {e}")


def create_scheduler(reminders: ReminderScheduler, timezone: str = None) -> AsyncIOScheduler:
    """Настройка планировщика (без запуска)"""
    timezone = timezone or config.TIMEZONE
    scheduler = AsyncIOScheduler(timezone=timezone)

    # Проход напоминаний — каждые N минут, без наложения проходов
    scheduler.add_job(
        run_sweep,
        IntervalTrigger(seconds=int(reminders.interval.total_seconds()), timezone=timezone),
        args=[reminders],
        id="reminder_sweep",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )

    # Очистка — каждый день в 03:00
    scheduler.add_job(
        run_cleanup,
        CronTrigger(hour=3, minute=0, timezone=timezone),
        args=[reminders],
        id="reminder_cleanup",
        replace_existing=True
    )

    return scheduler


def start_scheduler(scheduler: AsyncIOScheduler):
    """Запуск (нужен работающий event loop)"""
    scheduler.start()
    logger.info("Scheduler запущен")


def shutdown_scheduler(scheduler: AsyncIOScheduler):
    """Остановка планировщика"""
    if scheduler.running:
        scheduler.shutdown(wait=False)
    logger.info("Scheduler остановлен")
