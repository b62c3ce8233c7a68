"""
Orar Sync - асинхронная синхронизация расписания университета.

Основные функции:
- SyncPipeline.run_all() - Полный запуск всех этапов
- SyncPipeline.sync_lectures(group_ids) - Параллельная загрузка занятий групп
- build_schedules(group_ref, lectures) - Сборка недельных расписаний

Использование:
    from orar_sync import Database, SourceFetcher, SyncPipeline, get_config, configure_logging

    config = get_config()
    configure_logging(config.log_level)

    async with Database(config.database_url) as db, SourceFetcher(config) as fetcher:
        report = await SyncPipeline(config, db, fetcher).run_all()
"""

from .aggregator import ScheduleAggregator, build_schedules
from .config import Config, get_config
from .db import Database, get_database
from .errors import (
    ConfigError,
    FatalError,
    GroupLevelError,
    MappingError,
    OrarSyncError,
    PayloadError,
    TransientNetworkError,
    ValidationError,
)
from .fetcher import SourceFetcher
from .models import (
    CourseView,
    Faculty,
    Group,
    GroupResult,
    Lecture,
    LectureType,
    Parity,
    RejectionReason,
    RunReport,
    Schedule,
    StageReport,
    Teacher,
)
from .normalizer import OccurrenceNormalizer
from .pipeline import SyncPipeline
from .resolver import IdentifierResolver
from .utils import configure_logging, parse_weeks

__version__ = "1.0.0"

__all__ = [
    # Синхронизация
    "SyncPipeline",
    "SourceFetcher",
    "IdentifierResolver",
    "OccurrenceNormalizer",
    "ScheduleAggregator",
    "build_schedules",

    # Модели данных
    "Faculty",
    "Group",
    "Teacher",
    "Lecture",
    "LectureType",
    "Parity",
    "CourseView",
    "Schedule",
    "RejectionReason",
    "GroupResult",
    "StageReport",
    "RunReport",

    # Ошибки
    "OrarSyncError",
    "ConfigError",
    "TransientNetworkError",
    "PayloadError",
    "MappingError",
    "ValidationError",
    "GroupLevelError",
    "FatalError",

    # База данных
    "get_database",
    "Database",

    # Конфигурация
    "Config",
    "get_config",

    # Утилиты
    "configure_logging",
    "parse_weeks",
]
