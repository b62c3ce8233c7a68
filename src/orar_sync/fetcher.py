"""
Загрузка данных из внешнего сервиса расписания.

Все запросы идут через SourceFetcher: фиксированный таймаут, до
max_retries попыток с экспоненциальной задержкой для временных ошибок
и явная проверка структуры ответа.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp
import structlog

from .config import Config
from .errors import PayloadError, TransientNetworkError
from .utils import retry_async

logger = structlog.get_logger()

FACULTIES_ENDPOINT = "data/facultati.php?json"
GROUPS_ENDPOINT = "data/subgrupe.php?json"
TEACHERS_ENDPOINT = "data/cadre.php?json"
GROUP_LECTURES_ENDPOINT = "orar-grupe.php"

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class RateLimiter:
    """Выдерживает минимальный интервал между запросами к источнику."""

    def __init__(self, min_interval: float = 0.0):
        self.min_interval = min_interval
        self._lock = asyncio.Lock()
        self._last_request = 0.0

    async def wait(self) -> None:
        if self.min_interval <= 0:
            return
        async with self._lock:
            delay = self._last_request + self.min_interval - time.monotonic()
            if delay > 0:
                await asyncio.sleep(delay)
            self._last_request = time.monotonic()


@dataclass
class RawLectureEntry:
    """
    Запись занятия в том виде, в каком её отдаёт фид.

    Все значения - строки или None; разбор и проверка выполняются
    нормализатором.
    """
    week_day: Optional[str]
    start_hour: Optional[str]
    duration: Optional[str]
    parity: Optional[str]
    other_info: Optional[str]
    topic_short_name: Optional[str]
    topic_long_name: Optional[str]
    type_short_name: Optional[str]
    room_short_name: Optional[str]
    teacher_last_name: Optional[str]
    teacher_first_name: Optional[str]
    teacher_id: Optional[str] = None
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict) -> "RawLectureEntry":
        def _get(key: str) -> Optional[str]:
            value = data.get(key)
            return None if value is None else str(value)

        return cls(
            week_day=_get("weekDay"),
            start_hour=_get("startHour"),
            duration=_get("duration"),
            parity=_get("parity"),
            other_info=_get("otherInfo"),
            topic_short_name=_get("topicShortName"),
            topic_long_name=_get("topicLongName"),
            type_short_name=_get("typeShortName"),
            room_short_name=_get("roomShortName"),
            teacher_last_name=_get("teacherLastName"),
            teacher_first_name=_get("teacherFirstName"),
            teacher_id=_get("teacherID"),
            raw=data,
        )


@dataclass
class GroupLecturePayload:
    """Разобранный ответ с занятиями группы."""
    entries: list[RawLectureEntry]
    meta: dict


def expect_record_list(payload: Any, what: str) -> list[dict]:
    """
    Проверить, что ответ - список объектов.

    Raises:
        PayloadError: Ответ не список или содержит не-объекты
    """
    if not isinstance(payload, list):
        raise PayloadError(f"{what}: expected a JSON array, got {type(payload).__name__}")
    for index, item in enumerate(payload):
        if not isinstance(item, dict):
            raise PayloadError(f"{what}: item {index} is {type(item).__name__}, expected an object")
    return payload


def decode_group_lectures(payload: Any) -> GroupLecturePayload:
    """
    Разобрать ответ orar-grupe.php: пара [записи занятий, метаданные групп].

    Raises:
        PayloadError: Структура ответа не совпадает с ожидаемой
    """
    if not isinstance(payload, list) or len(payload) != 2:
        size = len(payload) if isinstance(payload, list) else None
        raise PayloadError(
            f"group lectures: expected [entries, meta], got {type(payload).__name__}"
            + (f" of length {size}" if size is not None else "")
        )

    raw_entries, meta = payload
    entries = expect_record_list(raw_entries, "group lectures entries")

    # PHP отдаёт пустой ассоциативный массив как []
    if meta == []:
        meta = {}
    if not isinstance(meta, dict):
        raise PayloadError(f"group lectures meta: expected an object, got {type(meta).__name__}")

    return GroupLecturePayload(
        entries=[RawLectureEntry.from_dict(entry) for entry in entries],
        meta=meta,
    )


class SourceFetcher:
    """
    HTTP клиент сервиса расписания.

    Использование:
        async with SourceFetcher(config) as fetcher:
            groups = await fetcher.fetch_groups()
    """

    def __init__(
            self,
            config: Config,
            session: Optional[aiohttp.ClientSession] = None,
            rate_limiter: Optional[RateLimiter] = None
    ):
        self.config = config
        self._session = session
        self._owns_session = session is None
        self.rate_limiter = rate_limiter or RateLimiter(config.min_request_interval)

    async def __aenter__(self) -> "SourceFetcher":
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": self.config.user_agent, "Accept": "application/json"}
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def fetch(self, endpoint: str, params: Optional[dict] = None) -> Any:
        """
        Загрузить JSON с эндпоинта.

        Args:
            endpoint: Путь относительно base_url
            params: Параметры запроса

        Returns:
            Разобранный JSON

        Raises:
            TransientNetworkError: Сетевые ошибки после всех попыток
            PayloadError: HTTP 4xx или не-JSON ответ (без повторов)
        """
        url = f"{self.config.base_url}/{endpoint.lstrip('/')}"
        return await retry_async(
            self._get_json,
            url,
            params,
            max_retries=self.config.max_retries,
            retry_delay=self.config.retry_delay,
            exponential_base=self.config.retry_exponential_base,
            retry_on=(TransientNetworkError,),
        )

    async def _get_json(self, url: str, params: Optional[dict]) -> Any:
        session = self._ensure_session()
        await self.rate_limiter.wait()

        started = time.perf_counter()
        try:
            async with session.get(
                    url,
                    params=params,
                    timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            ) as response:
                if response.status in RETRYABLE_STATUSES:
                    raise TransientNetworkError(
                        f"HTTP {response.status} from {url}", status=response.status
                    )
                if response.status >= 400:
                    raise PayloadError(f"HTTP {response.status} from {url}", url=url, status=response.status)
                text = await response.text()
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"{type(e).__name__} while fetching {url}: {e}") from e

        logger.debug(
            "source_fetched",
            url=url,
            params=params,
            size=len(text),
            duration=round(time.perf_counter() - started, 4)
        )

        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise PayloadError(f"invalid JSON from {url}: {e}", url=url) from e

    async def fetch_faculties(self) -> list[dict]:
        return expect_record_list(await self.fetch(FACULTIES_ENDPOINT), "faculties")

    async def fetch_groups(self) -> list[dict]:
        return expect_record_list(await self.fetch(GROUPS_ENDPOINT), "groups")

    async def fetch_teachers(self) -> list[dict]:
        return expect_record_list(await self.fetch(TEACHERS_ENDPOINT), "teachers")

    async def fetch_group_lectures(self, group_external_id: str) -> GroupLecturePayload:
        """Загрузить и разобрать занятия группы за настроенный учебный год и семестр."""
        params = {"mod": "grupa", "ID": group_external_id, "json": ""}
        if self.config.academic_year:
            params["an"] = self.config.academic_year
        if self.config.semester:
            params["sem"] = str(self.config.semester)
        return decode_group_lectures(await self.fetch(GROUP_LECTURES_ENDPOINT, params))
