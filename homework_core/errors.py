"""
Ошибки ядра — переводятся в ответы внешним (web) слоем
"""


class CoreError(Exception):
    """Базовая ошибка ядра"""


class NotFoundError(CoreError):
    """Неизвестное ДЗ, сдача, напоминание или челлендж"""


class ValidationError(CoreError):
    """Пустая сдача, оценка вне диапазона, некорректные смещения"""


class InvalidStateError(CoreError):
    """Переход, запрещённый машиной состояний"""


class ConcurrencyConflict(CoreError):
    """Потерянное обновление по ключу — вызывающий должен повторить запрос"""
