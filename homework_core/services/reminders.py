"""
Напоминания о дедлайнах — периодический проход (sweep) по незакрытым ДЗ
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from homework_core.clock import SystemClock, ensure_utc
from homework_core.config import config
from homework_core.database.models import Homework, Reminder
from homework_core.database.protocols import (
    HomeworkSource,
    NotificationSink,
    ReminderStore,
    SubmissionStore,
)
from homework_core.errors import NotFoundError, ValidationError
from homework_core.states import COMPLETED_STATUSES, ReminderPriority

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Итог одного прохода"""
    started_at: datetime
    covered_from: Optional[datetime] = None  # Окна с началом в (covered_from, started_at]
    homework_scanned: int = 0
    candidates: int = 0
    reminders_created: int = 0
    notifications_queued: int = 0
    errors: int = 0
    skipped: bool = False  # Предыдущий проход ещё идёт
    created: List[Reminder] = field(default_factory=list)


def reminder_priority(time_left: timedelta) -> ReminderPriority:
    """Срочность по времени до дедлайна"""
    if time_left < timedelta(0):
        return ReminderPriority.URGENT
    if time_left < timedelta(hours=6):
        return ReminderPriority.HIGH
    if time_left < timedelta(hours=24):
        return ReminderPriority.NORMAL
    return ReminderPriority.LOW


def reminder_content(homework: Homework, time_left: timedelta) -> tuple[str, str]:
    """Заголовок и текст напоминания"""
    due = homework.due_date.strftime("%d.%m.%Y %H:%M UTC")
    hours = int(time_left.total_seconds() // 3600)

    if time_left < timedelta(0):
        return (
            f"⚠️ ДЗ просрочено: {homework.title}",
            f"Задание по предмету «{homework.subject}» нужно было сдать до {due}. "
            f"Сдай как можно скорее!"
        )
    if time_left < timedelta(hours=1):
        return (
            f"⏰ Меньше часа до сдачи: {homework.title}",
            f"Задание по предмету «{homework.subject}» нужно сдать до {due}. "
            f"Отправь сейчас, чтобы не опоздать!"
        )
    if time_left < timedelta(hours=6):
        return (
            f"⏰ До сдачи {hours} ч.: {homework.title}",
            f"Задание по предмету «{homework.subject}» нужно сдать до {due}. Пора заканчивать!"
        )
    if time_left < timedelta(hours=24):
        return (
            f"📅 Сдача завтра: {homework.title}",
            f"Задание по предмету «{homework.subject}» нужно сдать до {due}. Не забудь!"
        )
    return (
        f"📅 До сдачи {hours // 24} дн.: {homework.title}",
        f"Задание по предмету «{homework.subject}» нужно сдать до {due}. Распредели время заранее."
    )


class ReminderScheduler:
    """
    Контекст планировщика напоминаний: свои часы, хранилища и настройки.

    Для каждого смещения (например, 24h и 1h) напоминание создаётся в проходе,
    попавшем в окно [due - offset, due - offset + interval).
    Если предыдущий проход был пропущен или опоздал, следующий добирает
    окна, начавшиеся после последнего завершённого прохода.
    Единственный механизм защиты от дублей — атомарная вставка по ключу
    (homework, student, offset).

    Доставка не блокирует проход: уведомления уходят фоновыми задачами,
    ошибки и таймауты только логируются (см. drain()).
    """

    def __init__(
        self,
        homework: HomeworkSource,
        submissions: SubmissionStore,
        reminders: ReminderStore,
        sink: NotificationSink,
        clock=None,
        offsets: Optional[List[timedelta]] = None,
        interval: Optional[timedelta] = None,
        notify_timeout: Optional[float] = None,
        retention: Optional[timedelta] = None,
    ):
        self.homework = homework
        self.submissions = submissions
        self.reminders = reminders
        self.sink = sink
        self.clock = clock or SystemClock()
        self.offsets = sorted(offsets or config.reminder_offsets(), reverse=True)
        self.interval = interval or config.sweep_interval()
        self.notify_timeout = notify_timeout or config.NOTIFY_TIMEOUT
        self.retention = retention or timedelta(days=config.REMINDER_RETENTION_DAYS)
        self._sweep_lock = asyncio.Lock()
        self._last_swept_at: Optional[datetime] = None
        self._deliveries: set[asyncio.Task] = set()
        self.delivery_failures = 0

        if self.interval <= timedelta(0):
            raise ValidationError("Интервал прохода должен быть положительным")
        if any(offset <= timedelta(0) for offset in self.offsets):
            raise ValidationError("Смещения напоминаний должны быть положительными")
        if len(set(self.offsets)) != len(self.offsets):
            raise ValidationError("Смещения напоминаний повторяются")

    # ============================================
    # Sweep
    # ============================================

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Один проход. Безопасен для повторного запуска;
        если предыдущий проход ещё идёт — пропускается.
        """
        now = ensure_utc(now or self.clock.now())
        result = SweepResult(started_at=now)

        if self._sweep_lock.locked():
            logger.warning("Reminders: предыдущий проход ещё выполняется, пропускаю")
            result.skipped = True
            return result

        async with self._sweep_lock:
            since = now - self.interval
            if self._last_swept_at is not None and self._last_swept_at < since:
                # Добираем окна, пропущенные с последнего завершённого прохода
                logger.info(f"Reminders: догоняю окна с {self._last_swept_at.isoformat()}")
                since = self._last_swept_at
            result.covered_from = since

            logger.info("Reminders: начинаю проход...")
            horizon = now + max(self.offsets) + self.interval
            homework_list = await self.homework.list_active_homework(before=horizon, after=now)

            for homework in homework_list:
                result.homework_scanned += 1
                try:
                    await self._sweep_homework(homework, since, now, result)
                except Exception as e:
                    # Одна «битая» запись не останавливает проход
                    result.errors += 1
                    logger.error(f"Reminders: ошибка по ДЗ {homework.id}: {e}")

            self._last_swept_at = now
            logger.info(
                f"Reminders: проверено ДЗ: {result.homework_scanned}, "
                f"создано напоминаний: {result.reminders_created}, "
                f"ошибок: {result.errors}"
            )

        return result

    async def _sweep_homework(self, homework: Homework, since: datetime, now: datetime, result: SweepResult):
        due_offsets = [
            offset for offset in self.offsets
            if since < homework.due_date - offset <= now
        ]
        if not due_offsets:
            return

        students = await self.homework.list_class_students(homework.class_id)
        for student_id in students:
            try:
                submission = await self.submissions.get_submission(homework.id, student_id)
                if submission is not None and submission.status in COMPLETED_STATUSES:
                    continue

                result.candidates += 1
                for offset in due_offsets:
                    reminder = await self._fire(homework, student_id, offset, now, result)
                    if reminder is not None:
                        result.created.append(reminder)
            except Exception as e:
                result.errors += 1
                logger.error(
                    f"Reminders: ошибка для ученика {student_id}, ДЗ {homework.id}: {e}"
                )

    async def _fire(
        self,
        homework: Homework,
        student_id: int,
        offset: timedelta,
        now: datetime,
        result: SweepResult,
    ) -> Optional[Reminder]:
        if await self.reminders.reminder_exists(homework.id, student_id, offset):
            return None

        time_left = homework.due_date - now
        title, message = reminder_content(homework, time_left)
        reminder = await self.reminders.insert_reminder_if_absent(Reminder(
            id=None,
            homework_id=homework.id,
            student_id=student_id,
            offset_from_due=offset,
            due_date=homework.due_date,
            title=title,
            message=message,
            priority=reminder_priority(time_left),
            fired_at=now,
        ))
        if reminder is None:
            # Параллельный проход успел раньше
            return None

        result.reminders_created += 1
        self._dispatch(reminder)
        result.notifications_queued += 1
        return reminder

    # ============================================
    # Delivery
    # ============================================

    def _dispatch(self, reminder: Reminder):
        """Передать напоминание в доставку, не дожидаясь её завершения"""
        task = asyncio.create_task(self._deliver(reminder))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _deliver(self, reminder: Reminder) -> bool:
        try:
            await asyncio.wait_for(
                self.sink.enqueue(reminder.student_id, reminder.title, reminder.message, reminder.due_date),
                timeout=self.notify_timeout,
            )
            return True
        except Exception as e:
            self.delivery_failures += 1
            logger.warning(
                f"Не удалось отправить напоминание {reminder.id} ученику {reminder.student_id}: {e!r}"
            )
            return False

    @property
    def pending_deliveries(self) -> int:
        return len(self._deliveries)

    async def drain(self) -> int:
        """Дождаться уже переданных доставок (остановка, тесты); вернуть число неудач"""
        if self._deliveries:
            await asyncio.gather(*self._deliveries, return_exceptions=True)
        return self.delivery_failures

    # ============================================
    # Inbox
    # ============================================

    async def list_reminders(self, user_id: int, unread_only: bool = False) -> List[Reminder]:
        return await self.reminders.list_user_reminders(user_id, unread_only=unread_only)

    async def mark_read(self, reminder_id: int) -> Reminder:
        reminder = await self.reminders.mark_reminder_read(reminder_id)
        if reminder is None:
            raise NotFoundError(f"Напоминание {reminder_id} не найдено")
        return reminder

    async def mark_all_read(self, user_id: int) -> int:
        return await self.reminders.mark_all_reminders_read(user_id)

    async def cleanup(self, now: Optional[datetime] = None) -> int:
        """Job: удалить напоминания старше срока хранения"""
        now = ensure_utc(now or self.clock.now())
        deleted = await self.reminders.delete_reminders_before(now - self.retention)
        if deleted:
            logger.info(f"Reminders: удалено старых напоминаний: {deleted}")
        return deleted
