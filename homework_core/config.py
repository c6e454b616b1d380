"""
Конфигурация ядра — загрузка переменных окружения
"""

import os
import re
from datetime import timedelta
from pathlib import Path
from dotenv import load_dotenv

from homework_core.errors import ValidationError

# Загружаем .env из корня проекта
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

_OFFSET_RE = re.compile(r"^(\d+)\s*([dhm])$")
_OFFSET_UNITS = {"d": "days", "h": "hours", "m": "minutes"}


def parse_offsets(raw: str) -> list[timedelta]:
    """
    Разбор списка смещений напоминаний: "24h,1h,30m" -> [timedelta, ...].
    Результат отсортирован по убыванию (сначала самые ранние напоминания).
    """
    offsets = []
    for part in raw.split(","):
        part = part.strip().lower()
        if not part:
            continue
        match = _OFFSET_RE.match(part)
        if not match:
            raise ValidationError(f"Некорректное смещение напоминания: {part!r}")
        amount, unit = int(match.group(1)), match.group(2)
        if amount <= 0:
            raise ValidationError(f"Смещение должно быть положительным: {part!r}")
        offset = timedelta(**{_OFFSET_UNITS[unit]: amount})
        if offset in offsets:
            raise ValidationError(f"Смещение указано дважды: {part!r}")
        offsets.append(offset)

    if not offsets:
        raise ValidationError("Список смещений напоминаний пуст")

    return sorted(offsets, reverse=True)


class Config:
    """Конфигурация приложения"""

    # --- Database ---
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    # --- Telegram (доставка уведомлений) ---
    BOT_TOKEN: str = os.getenv("BOT_TOKEN", "")

    # --- Scheduler ---
    TIMEZONE: str = os.getenv("TIMEZONE", "UTC")
    REMINDER_SWEEP_MINUTES: int = int(os.getenv("REMINDER_SWEEP_MINUTES", "15"))
    REMINDER_OFFSETS: str = os.getenv("REMINDER_OFFSETS", "24h,1h")
    REMINDER_RETENTION_DAYS: int = int(os.getenv("REMINDER_RETENTION_DAYS", "7"))
    NOTIFY_TIMEOUT: float = float(os.getenv("NOTIFY_TIMEOUT", "10"))

    # --- Оценки ---
    GRADE_MIN: int = int(os.getenv("GRADE_MIN", "0"))
    GRADE_MAX: int = int(os.getenv("GRADE_MAX", "100"))
    PERFECT_SCORE: int = int(os.getenv("PERFECT_SCORE", "100"))

    # --- Геймификация ---
    POINTS_SUBMISSION: int = int(os.getenv("POINTS_SUBMISSION", "10"))
    POINTS_ON_TIME: int = int(os.getenv("POINTS_ON_TIME", "5"))
    POINTS_PERFECT_SCORE: int = int(os.getenv("POINTS_PERFECT_SCORE", "15"))
    POINTS_STREAK_MILESTONE: int = int(os.getenv("POINTS_STREAK_MILESTONE", "10"))
    STREAK_MILESTONE_DAYS: int = int(os.getenv("STREAK_MILESTONE_DAYS", "5"))

    @classmethod
    def sweep_interval(cls) -> timedelta:
        return timedelta(minutes=cls.REMINDER_SWEEP_MINUTES)

    @classmethod
    def reminder_offsets(cls) -> list[timedelta]:
        return parse_offsets(cls.REMINDER_OFFSETS)

    @classmethod
    def validate(cls) -> list[str]:
        """Проверка обязательных переменных"""
        errors = []

        if not cls.DATABASE_URL:
            errors.append("DATABASE_URL не задан")
        if not cls.BOT_TOKEN:
            errors.append("BOT_TOKEN не задан")
        if cls.REMINDER_SWEEP_MINUTES <= 0:
            errors.append("REMINDER_SWEEP_MINUTES должен быть больше нуля")
        if cls.GRADE_MIN > cls.GRADE_MAX:
            errors.append("GRADE_MIN больше GRADE_MAX")
        if min(cls.POINTS_SUBMISSION, cls.POINTS_ON_TIME, cls.POINTS_PERFECT_SCORE,
               cls.POINTS_STREAK_MILESTONE) < 0:
            errors.append("Количество очков не может быть отрицательным")
        if cls.STREAK_MILESTONE_DAYS <= 0:
            errors.append("STREAK_MILESTONE_DAYS должен быть больше нуля")

        try:
            cls.reminder_offsets()
        except ValidationError as e:
            errors.append(str(e))

        return errors


# Синглтон конфигурации
config = Config()
