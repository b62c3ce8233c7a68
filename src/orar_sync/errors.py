"""
Иерархия исключений синхронизации.

Ошибки делятся на временные (повторяются клиентом автоматически),
ошибки записей и групп (пропускаются и попадают в отчёт) и фатальные
(прерывают весь запуск).
"""

from typing import Optional


class OrarSyncError(Exception):
    """Базовое исключение синхронизации."""


class ConfigError(OrarSyncError, ValueError):
    """Неверная или неполная конфигурация."""


class TransientNetworkError(OrarSyncError):
    """
    Временная сетевая ошибка: обрыв соединения, таймаут, HTTP 429/5xx.

    Клиент повторяет такие запросы с экспоненциальной задержкой.
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class PayloadError(OrarSyncError):
    """
    Ответ источника нельзя использовать: HTTP 4xx или неожиданная структура.

    Повтор не поможет, ошибка сразу уходит вызывающему коду.
    """

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class MappingError(OrarSyncError):
    """Внешний код не сопоставлен каноническому идентификатору."""

    def __init__(self, entity: str, code: str, reason: str):
        super().__init__(f"{entity} {code!r} not resolved: {reason}")
        self.entity = entity
        self.code = code
        self.reason = reason


class ValidationError(OrarSyncError):
    """Исходная запись повреждена или неполна."""

    def __init__(self, reason, message: str = ""):
        super().__init__(message or str(reason))
        self.reason = reason


class GroupLevelError(OrarSyncError):
    """Группа целиком не обработана: нет в хранилище, не загрузилась или пуста."""

    def __init__(self, group_id: str, reason: str, message: str = ""):
        super().__init__(message or f"group {group_id}: {reason}")
        self.group_id = group_id
        self.reason = reason


class FatalError(OrarSyncError):
    """Ошибка уровня запуска, прерывает синхронизацию."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"stage {stage!r} failed: {type(cause).__name__}: {cause}")
        self.stage = stage
        self.cause = cause
