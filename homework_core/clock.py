"""
Часы и работа с UTC
"""

from datetime import datetime, timezone

from homework_core.errors import ValidationError


class SystemClock:
    """Реальные часы (UTC)"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Привести aware-datetime к UTC. Naive-значения не принимаются."""
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError(f"Время без часового пояса: {value.isoformat()}")
    return value.astimezone(timezone.utc)


def is_late(submitted_at: datetime, due_date: datetime) -> bool:
    """Опоздание — строго после дедлайна"""
    return ensure_utc(submitted_at) > ensure_utc(due_date)
