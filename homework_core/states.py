"""
Перечисления статусов и типов (вместо строковых полей)
"""

from enum import Enum


class SubmissionStatus(str, Enum):
    """Жизненный цикл сдачи ДЗ"""

    NOT_SUBMITTED = "NOT_SUBMITTED"  # Записи ещё нет (выводится, не хранится)
    SUBMITTED = "SUBMITTED"          # Сдано в срок
    LATE = "LATE"                    # Сдано после дедлайна
    GRADED = "GRADED"                # Оценено учителем


# Статусы, при которых ДЗ считается сданным
COMPLETED_STATUSES = frozenset({
    SubmissionStatus.SUBMITTED,
    SubmissionStatus.LATE,
    SubmissionStatus.GRADED,
})


class SubmissionType(str, Enum):
    """Тип содержимого сдачи"""

    TEXT = "TEXT"
    VOICE = "VOICE"
    PHOTO = "PHOTO"
    PDF = "PDF"
    ATTACHMENT = "ATTACHMENT"  # Один файл без типа
    MIXED = "MIXED"


class EventKind(str, Enum):
    """События сдачи, на которые реагирует геймификация"""

    SUBMITTED = "SUBMITTED"                  # Сдано с опозданием
    SUBMITTED_ON_TIME = "SUBMITTED_ON_TIME"  # Сдано в срок
    GRADED = "GRADED"


class ChallengeType(str, Enum):
    """Типы челленджей"""

    SUBMISSION_COUNT = "SUBMISSION_COUNT"
    ON_TIME_COUNT = "ON_TIME_COUNT"
    STREAK = "STREAK"                # Дни подряд со сдачей
    GRADED_COUNT = "GRADED_COUNT"
    PERFECT_SCORE = "PERFECT_SCORE"


class ReminderPriority(str, Enum):
    """Срочность напоминания"""

    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class BadgeType(str, Enum):
    """Типы значков (порог по умолчанию — BADGE_DEFAULT_THRESHOLDS)"""

    HOMEWORK_COMPLETION = "HOMEWORK_COMPLETION"  # Сдано ДЗ
    ON_TIME_SUBMISSION = "ON_TIME_SUBMISSION"    # Сдано в срок
    PERFECT_SCORE = "PERFECT_SCORE"              # Максимальная оценка
    STREAK = "STREAK"                            # Текущая серия дней
    SUBJECT_MASTERY = "SUBJECT_MASTERY"          # Много сданных ДЗ
    CONSISTENCY = "CONSISTENCY"                  # Много сдач в срок
