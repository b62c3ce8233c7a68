"""
Конфигурация синхронизации расписания.
"""

import json
import os
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Optional

from .errors import ConfigError


def load_env_file(path: Path) -> None:
    with path.open("r", encoding="utf-8") as env_file:
        for line in env_file:
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue

            if "=" not in stripped:
                continue

            key, value = stripped.split("=", 1)
            os.environ.setdefault(key.strip(), value.strip().strip('"\''))


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def parse_semester_start(raw: Optional[str]) -> date:
    """Разобрать дату начала семестра (YYYY-MM-DD)."""
    if not raw:
        raise ConfigError("SEMESTER_START environment variable is required")
    try:
        return date.fromisoformat(raw.strip())
    except ValueError:
        raise ConfigError(f"SEMESTER_START must be an ISO date, got {raw!r}") from None


def load_faculty_map(path: Path) -> dict[str, str]:
    """
    Загрузить таблицу соответствия кодов факультетов.

    Файл - JSON-объект вида {"1": "FIESC", "2": "FIMAR"}: код из фида
    сопоставляется каноническому коду факультета.

    Args:
        path: Путь к JSON-файлу

    Returns:
        Словарь код фида -> канонический код

    Raises:
        ConfigError: Файл отсутствует или имеет неверный формат
    """
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError:
        raise ConfigError(f"FACULTY_MAP_PATH file not found: {path}") from None
    except json.JSONDecodeError as e:
        raise ConfigError(f"FACULTY_MAP_PATH is not valid JSON: {e}") from None

    if not isinstance(data, dict):
        raise ConfigError("FACULTY_MAP_PATH must contain a JSON object")

    mapping = {}
    for key, value in data.items():
        if not isinstance(value, (str, int)) or isinstance(value, bool):
            raise ConfigError(f"Faculty map value for {key!r} must be a string")
        mapping[str(key).strip()] = str(value).strip()
    return mapping


@dataclass
class Config:
    """Конфигурация приложения."""

    # База данных
    database_url: str

    # Календарь семестра
    semester_start: date
    semester_weeks: int = 14
    academic_year: Optional[str] = None
    semester: Optional[int] = None

    # HTTP клиент
    base_url: str = "https://orar.usv.ro/orar/vizualizare"
    request_timeout: int = 30
    max_retries: int = 3
    retry_delay: float = 1.0
    retry_exponential_base: float = 2.0
    min_request_interval: float = 0.2
    user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

    # Синхронизация
    max_concurrent_groups: int = 5
    require_specialization: bool = False
    faculty_map: dict[str, str] = field(default_factory=dict)

    # Логирование
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Проверка значений при создании."""
        if self.semester_weeks < 1:
            raise ConfigError("SEMESTER_WEEKS must be positive")
        if self.max_retries < 1:
            raise ConfigError("MAX_RETRIES must be at least 1")
        if self.max_concurrent_groups < 1:
            raise ConfigError("MAX_CONCURRENT_GROUPS must be at least 1")
        if self.request_timeout <= 0:
            raise ConfigError("REQUEST_TIMEOUT must be positive")
        if self.semester is not None and self.semester not in (1, 2):
            raise ConfigError("SEMESTER must be 1 or 2")

    @classmethod
    def from_env(cls) -> "Config":
        """Создать конфигурацию из переменных окружения."""
        env_path = Path.cwd() / ".env"
        if env_path.exists():
            load_env_file(env_path)

        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ConfigError("DATABASE_URL environment variable is required")

        faculty_map_path = os.getenv("FACULTY_MAP_PATH")
        faculty_map = load_faculty_map(Path(faculty_map_path)) if faculty_map_path else {}

        semester_raw = os.getenv("SEMESTER")

        return cls(
            database_url=database_url,
            semester_start=parse_semester_start(os.getenv("SEMESTER_START")),
            semester_weeks=_env_int("SEMESTER_WEEKS", 14),
            academic_year=os.getenv("ACADEMIC_YEAR") or None,
            semester=_env_int("SEMESTER", 0) if semester_raw else None,
            base_url=os.getenv("ORAR_BASE_URL", "https://orar.usv.ro/orar/vizualizare").rstrip("/"),
            request_timeout=_env_int("REQUEST_TIMEOUT", 30),
            max_retries=_env_int("MAX_RETRIES", 3),
            retry_delay=_env_float("RETRY_DELAY", 1.0),
            retry_exponential_base=_env_float("RETRY_EXPONENTIAL_BASE", 2.0),
            min_request_interval=_env_float("MIN_REQUEST_INTERVAL", 0.2),
            user_agent=os.getenv("USER_AGENT", "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"),
            max_concurrent_groups=_env_int("MAX_CONCURRENT_GROUPS", 5),
            require_specialization=_env_bool("REQUIRE_SPECIALIZATION", False),
            faculty_map=faculty_map,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


# Глобальный экземпляр конфигурации
config: Optional[Config] = None


def get_config() -> Config:
    """Получить глобальную конфигурацию."""
    global config
    if config is None:
        config = Config.from_env()
    return config
