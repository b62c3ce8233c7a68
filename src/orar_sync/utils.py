"""
Утилиты для нормализации расписания.
Содержит функции для разбора времени, недель, имён и повторов запросов.
"""
import asyncio
import logging
import re
from datetime import date
from typing import Awaitable, Callable, Optional, ParamSpec, TypeVar

import structlog

from .models import LectureType, Parity

logger = structlog.get_logger()

# Маппинг видов занятий из фида
LECTURE_TYPE_MAPPING = {
    "curs": LectureType.LECTURE,
    "lab": LectureType.LAB,
    "sem": LectureType.SEMINAR,
    "pr": LectureType.SEMINAR,
}

# Маппинг кодов чётности: impar / par
PARITY_MAPPING = {
    "i": Parity.ODD,
    "p": Parity.EVEN,
}

MINUTES_PER_DAY = 24 * 60

DATE_TOKEN_RE = re.compile(r"(?<![\d.])(\d{1,2})\.(\d{1,2})(?:\.\d{2,4})?(?![\d.])")
WEEK_RANGE_RE = re.compile(r"S(\d+)\s*-\s*S(\d+)", re.IGNORECASE)
SINGLE_WEEK_RE = re.compile(r"S(\d+)", re.IGNORECASE)


def normalize_text(text: Optional[str]) -> str:
    """
    Нормализация текста: удаление лишних пробелов и спецсимволов.

    Args:
        text: Исходный текст

    Returns:
        Нормализованный текст
    """
    if not text:
        return ""

    text = str(text).replace('\xa0', ' ').replace('\u200b', '')
    text = re.sub(r'\s+', ' ', text)

    return text.strip()


def parse_int(value) -> Optional[int]:
    """Целое число из строки фида или None, если не разбирается."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = normalize_text(str(value))
    if not re.fullmatch(r"[+-]?\d+", text):
        return None
    return int(text)


def map_lecture_type(type_short_name: Optional[str]) -> LectureType:
    """Вид занятия по короткому коду; неизвестные коды считаются лекцией."""
    return LECTURE_TYPE_MAPPING.get(normalize_text(type_short_name).lower(), LectureType.LECTURE)


def map_parity(raw: Optional[str]) -> Parity:
    """'i' - нечётная, 'p' - чётная, всё остальное - каждую неделю."""
    return PARITY_MAPPING.get(normalize_text(raw).lower(), Parity.ALL)


def format_minutes(minutes: int) -> str:
    """
    Перевести смещение в минутах от полуночи в "HH:MM".

    Args:
        minutes: Минуты от начала суток

    Returns:
        Строка вида "09:00"
    """
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def format_teacher(last_name: str, first_name: Optional[str]) -> str:
    """
    Отображаемое имя преподавателя: "Фамилия И.".

    Инициал берётся из первого слова имени; без имени остаётся только фамилия.
    """
    last_name = normalize_text(last_name)
    first_name = normalize_text(first_name)
    if not first_name:
        return last_name
    return f"{last_name} {first_name.split(' ')[0][0]}."


def weeks_from_parity(parity: Parity, total_weeks: int = 14) -> list[int]:
    """Недели семестра по чётности."""
    match parity:
        case Parity.ODD:
            return list(range(1, total_weeks + 1, 2))
        case Parity.EVEN:
            return list(range(2, total_weeks + 1, 2))
        case _:
            return list(range(1, total_weeks + 1))


def resolve_token_date(day: int, month: int, anchor: date, total_weeks: int = 14) -> Optional[date]:
    """
    Дата для токена "DD.MM" относительно начала семестра.

    Берётся год начала семестра. Если дата раньше начала и в следующем
    году попадает в семестр (не дальше total_weeks), это следующий
    календарный год (семестр через Новый год). Иначе остаётся год начала,
    и неделя получается меньше 1. Несуществующие даты дают None.
    """
    try:
        candidate = date(anchor.year, month, day)
    except ValueError:
        return None
    if candidate < anchor:
        try:
            rolled = date(anchor.year + 1, month, day)
        except ValueError:
            return candidate
        if week_number_for_date(rolled, anchor) <= total_weeks:
            return rolled
    return candidate


def week_number_for_date(target: date, anchor: date) -> int:
    """Номер учебной недели: floor((date - anchor) / 7 дней) + 1."""
    return (target - anchor).days // 7 + 1


def weeks_from_dates(text: str, anchor: date, total_weeks: int = 14) -> Optional[list[int]]:
    """
    Недели по датам "DD.MM" в тексте.

    Токен считается датой, только если такая дата существует:
    "14.00" или "8.30" (время) датой не являются.

    Returns:
        None, если реальных дат в тексте нет; иначе отсортированный список недель
    """
    weeks = set()
    for day_str, month_str in DATE_TOKEN_RE.findall(text):
        token_date = resolve_token_date(int(day_str), int(month_str), anchor, total_weeks)
        if token_date is None:
            logger.debug("date_token_ignored", token=f"{day_str}.{month_str}")
            continue
        weeks.add(week_number_for_date(token_date, anchor))
    if not weeks:
        return None
    return sorted(weeks)


def parse_weeks(
        other_info: Optional[str],
        parity: Parity,
        anchor: date,
        total_weeks: int = 14
) -> list[int]:
    """
    Разобрать учебные недели занятия.

    Порядок важен, срабатывает первое совпадение:
    1. Даты "DD.MM" - недели относительно начала семестра
    2. Диапазон "S<a>-S<b>" - недели a..b (при a > b - по чётности)
    3. Одна неделя "S<n>"
    4. По чётности: все, чётные или нечётные недели семестра

    Args:
        other_info: Свободный текст из фида
        parity: Чётность занятия
        anchor: Дата начала семестра
        total_weeks: Число недель в семестре

    Returns:
        Список недель (даты до начала семестра дают недели меньше 1)
    """
    text = normalize_text(other_info)

    date_weeks = weeks_from_dates(text, anchor, total_weeks)
    if date_weeks is not None:
        return date_weeks

    range_match = WEEK_RANGE_RE.search(text)
    if range_match:
        start, end = int(range_match.group(1)), int(range_match.group(2))
        if start <= end:
            return list(range(start, end + 1))
        return weeks_from_parity(parity, total_weeks)

    single_match = SINGLE_WEEK_RE.search(text)
    if single_match:
        return [int(single_match.group(1))]

    return weeks_from_parity(parity, total_weeks)


# Типы для generic retry функции
P = ParamSpec('P')
T = TypeVar('T')


async def retry_async(
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        exponential_base: float = 2.0,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        **kwargs: P.kwargs
) -> T:
    """
    Повторяет асинхронную функцию при ошибках с экспоненциальной задержкой.

    Повторяются только исключения из retry_on, остальные пробрасываются сразу.

    Args:
        func: Асинхронная функция для выполнения
        *args: Позиционные аргументы для функции
        max_retries: Максимальное число попыток
        retry_delay: Начальная задержка в секундах
        exponential_base: Множитель задержки
        retry_on: Классы исключений, которые имеет смысл повторять
        **kwargs: Именованные аргументы для функции

    Returns:
        Результат выполнения функции

    Raises:
        Exception: Последнее исключение после всех попыток
    """
    for attempt in range(1, max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except retry_on as e:
            if attempt >= max_retries:
                logger.error(
                    "retry_exhausted",
                    attempts=max_retries,
                    error=str(e)
                )
                raise

            delay = retry_delay * (exponential_base ** (attempt - 1))
            logger.warning(
                "retry_attempt",
                attempt=attempt,
                max_retries=max_retries,
                delay=delay,
                error=str(e)
            )
            await asyncio.sleep(delay)

    raise RuntimeError("retry_async called with max_retries < 1")


def configure_logging(log_level: str = "INFO") -> None:
    """
    Настройка structlog для логирования.

    Args:
        log_level: Уровень логирования
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
