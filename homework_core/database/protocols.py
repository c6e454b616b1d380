"""
Узкие интерфейсы хранилищ, через которые ядро читает и пишет записи.

Имена методов не пересекаются между интерфейсами, поэтому один объект
(модуль queries для PostgreSQL или MemoryStore) может реализовать их все.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from homework_core.database.models import (
    Badge,
    Challenge,
    ChallengeProgress,
    Homework,
    Reminder,
    Report,
    Submission,
    UserLevel,
    UserStats,
)
from homework_core.states import ChallengeType


class HomeworkSource(Protocol):
    async def get_homework(self, homework_id: int) -> Optional[Homework]: ...

    async def list_active_homework(
        self, before: datetime, after: Optional[datetime] = None
    ) -> List[Homework]: ...

    async def list_class_students(self, class_id: int) -> List[int]: ...

    async def list_class_homework(
        self, class_id: int, start: datetime, end: datetime
    ) -> List[Homework]: ...


class SubmissionStore(Protocol):
    async def get_submission(self, homework_id: int, student_id: int) -> Optional[Submission]: ...

    async def get_submission_by_id(self, submission_id: int) -> Optional[Submission]: ...

    async def upsert_submission(self, submission: Submission) -> Submission:
        """Вставка или обновление; ConcurrencyConflict при устаревшей версии."""
        ...

    async def list_student_submissions(
        self, student_id: int, homework_ids: List[int]
    ) -> List[Submission]: ...


class ReminderStore(Protocol):
    async def reminder_exists(self, homework_id: int, student_id: int, offset: timedelta) -> bool: ...

    async def insert_reminder_if_absent(self, reminder: Reminder) -> Optional[Reminder]:
        """Атомарно: вернёт сохранённое напоминание или None, если ключ уже занят."""
        ...

    async def list_user_reminders(self, user_id: int, unread_only: bool = False) -> List[Reminder]: ...

    async def mark_reminder_read(self, reminder_id: int) -> Optional[Reminder]: ...

    async def mark_all_reminders_read(self, user_id: int) -> int: ...

    async def delete_reminders_before(self, fired_before: datetime) -> int: ...


class NotificationSink(Protocol):
    async def enqueue(self, user_id: int, title: str, message: str, due_date: datetime) -> None: ...


class PointLedger(Protocol):
    async def credit_points(self, user_id: int, amount: int, reference: Optional[str] = None) -> bool:
        """False, если начисление с таким reference уже было."""
        ...

    async def get_total_points(self, user_id: int) -> int: ...

    async def get_level_table(self) -> List[UserLevel]: ...

    async def list_top_points(self, limit: int) -> List[tuple[int, int]]:
        """(user_id, total_points) по убыванию очков; при равенстве — по user_id."""
        ...


class ChallengeStore(Protocol):
    async def list_active_challenges(
        self, challenge_type: Optional[ChallengeType], now: datetime
    ) -> List[Challenge]:
        """challenge_type=None — челленджи всех типов."""
        ...

    async def get_challenge(self, challenge_id: int) -> Optional[Challenge]: ...

    async def get_progress(self, user_id: int, challenge_id: int) -> Optional[ChallengeProgress]: ...

    async def update_progress(self, progress: ChallengeProgress, event_id: Optional[str] = None) -> bool:
        """
        Атомарно: учесть событие event_id и сохранить прогресс.
        False — событие уже учтено (ничего не записано).
        ConcurrencyConflict — версия устарела (событие тоже не записано).
        """
        ...


class StatsStore(Protocol):
    async def get_user_stats(self, user_id: int) -> Optional[UserStats]: ...

    async def update_user_stats(self, stats: UserStats, event_id: str) -> bool:
        """Как update_progress: False — событие уже учтено, ConcurrencyConflict — гонка."""
        ...


class BadgeStore(Protocol):
    async def list_active_badges(self) -> List[Badge]: ...

    async def award_badge(self, user_id: int, badge_id: int, awarded_at: datetime) -> bool:
        """Атомарно: True, если значок выдан впервые."""
        ...

    async def list_user_badges(self, user_id: int) -> List[Badge]: ...


class ReportStore(Protocol):
    async def insert_report(self, report: Report) -> Report: ...

    async def list_student_reports(self, student_id: int) -> List[Report]: ...
