"""
Ошибки ядра SOS и движка последствий
"""


class SOSError(Exception):
    """Базовая ошибка: reason показывается пользователю как есть"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ConflictError(SOSError):
    """Нарушение уникальности (вторая активная сессия, повторный ввод)"""


class DuplicateSubmissionError(ConflictError):
    """Партнёр уже отправил свою позицию в этой сессии"""


class ValidationError(SOSError):
    """Пропущен обязательный ответ или ответ не подходит по типу"""


class AuthorizationError(SOSError):
    """Действие доступно только определённому участнику"""


class RateLimitError(SOSError):
    """Превышен дневной лимит SOS-сессий"""


class InvalidStateError(SOSError):
    """Операция недопустима в текущем состоянии"""


class NotFoundError(SOSError):
    """Объект не найден"""


class GenerationFailure(SOSError):
    """Ошибка или таймаут языковой модели"""
