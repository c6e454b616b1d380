"""
Модели данных (dataclasses)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from homework_core.states import (
    BadgeType,
    ChallengeType,
    EventKind,
    ReminderPriority,
    SubmissionStatus,
    SubmissionType,
)


@dataclass
class Homework:
    """Домашнее задание"""
    id: int
    title: str
    subject: str
    due_date: datetime
    class_id: int
    teacher_id: int
    is_active: bool = True


@dataclass
class SubmissionPayload:
    """Содержимое сдачи (файлы хранятся снаружи, здесь только ссылки)"""
    text: Optional[str] = None
    attachment_url: Optional[str] = None
    audio_url: Optional[str] = None
    image_url: Optional[str] = None
    pdf_url: Optional[str] = None

    def _filled(self) -> dict:
        fields = {
            "text": self.text,
            "attachment": self.attachment_url,
            "audio": self.audio_url,
            "image": self.image_url,
            "pdf": self.pdf_url,
        }
        return {k: v for k, v in fields.items() if v and v.strip()}

    def is_empty(self) -> bool:
        return not self._filled()

    @property
    def submission_type(self) -> SubmissionType:
        filled = self._filled()
        if len(filled) > 1:
            return SubmissionType.MIXED
        if "audio" in filled:
            return SubmissionType.VOICE
        if "image" in filled:
            return SubmissionType.PHOTO
        if "pdf" in filled:
            return SubmissionType.PDF
        if "attachment" in filled:
            return SubmissionType.ATTACHMENT
        return SubmissionType.TEXT


@dataclass
class Submission:
    """Сдача ДЗ — одна запись на пару (homework_id, student_id)"""
    id: Optional[int]
    homework_id: int
    student_id: int
    submitted_at: datetime
    status: SubmissionStatus
    is_late: bool
    submission_type: SubmissionType = SubmissionType.TEXT
    content_text: Optional[str] = None
    attachment_url: Optional[str] = None
    audio_url: Optional[str] = None
    image_url: Optional[str] = None
    pdf_url: Optional[str] = None
    grade: Optional[int] = None
    feedback: Optional[str] = None
    graded_at: Optional[datetime] = None
    version: int = 0  # 0 — ещё не сохранена

    def __post_init__(self):
        self.status = SubmissionStatus(self.status)
        self.submission_type = SubmissionType(self.submission_type)


@dataclass
class Reminder:
    """Напоминание о дедлайне"""
    id: Optional[int]
    homework_id: int
    student_id: int
    offset_from_due: timedelta
    due_date: datetime
    title: str
    message: str
    priority: ReminderPriority
    fired_at: datetime
    is_read: bool = False

    def __post_init__(self):
        self.priority = ReminderPriority(self.priority)


@dataclass
class Challenge:
    """Челлендж — цель с наградой в очках"""
    id: int
    title: str
    type: ChallengeType
    target: int
    points_reward: int
    start_date: datetime
    end_date: datetime
    is_active: bool = True

    def __post_init__(self):
        self.type = ChallengeType(self.type)

    def is_open(self, at: datetime) -> bool:
        """Активен ли челлендж в момент at (окно [start, end))"""
        return self.is_active and self.start_date <= at < self.end_date


@dataclass
class ChallengeProgress:
    """Прогресс пользователя по челленджу"""
    user_id: int
    challenge_id: int
    progress: int = 0
    current_run: int = 0  # Текущая серия дней (для STREAK)
    completed: bool = False
    completed_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    version: int = 0  # 0 — ещё не сохранён


@dataclass(frozen=True)
class UserLevel:
    """Уровень пользователя"""
    level_number: int
    points_required: int
    name: str = ""


@dataclass
class UserStats:
    """Счётчики пользователя для значков и серий"""
    user_id: int
    homework_completed: int = 0
    on_time_submissions: int = 0
    perfect_scores: int = 0
    total_submissions: int = 0
    current_streak: int = 0  # Дни подряд со сдачей (UTC)
    longest_streak: int = 0
    last_submission_at: Optional[datetime] = None
    version: int = 0


@dataclass
class Badge:
    """Значок — выдаётся один раз при достижении порога"""
    id: int
    name: str
    type: BadgeType
    threshold: Optional[int] = None  # None — порог по умолчанию для типа
    description: str = ""
    is_active: bool = True

    def __post_init__(self):
        self.type = BadgeType(self.type)


@dataclass
class SubmissionEvent:
    """Событие сдачи/оценки для геймификации"""
    event_id: str
    kind: EventKind
    user_id: int
    homework_id: int
    occurred_at: datetime
    grade: Optional[int] = None
    attempt: int = 1  # Номер попытки сдачи (пересдача — 2, 3, ...)


@dataclass(frozen=True)
class ReportWindow:
    """Окно отчёта [start, end)"""
    start: datetime
    end: datetime

    def contains(self, at: datetime) -> bool:
        return self.start <= at < self.end


@dataclass(frozen=True)
class Report:
    """Снимок статистики ученика — не изменяется после создания"""
    id: Optional[int]
    student_id: int
    class_id: int
    window: ReportWindow
    total_assigned: int
    total_completed: int
    completion_rate: float
    average_score: Optional[float]
    on_time_count: int
    late_count: int
    generated_at: datetime
