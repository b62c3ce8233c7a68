"""
Модуль для работы с базой данных PostgreSQL через asyncpg.
"""

import json
from contextlib import asynccontextmanager
from typing import Iterable, Optional

import asyncpg
import structlog

from .config import get_config
from .models import (
    Faculty,
    Group,
    Lecture,
    LectureType,
    Parity,
    Schedule,
    Teacher,
    TeacherInfo,
)

logger = structlog.get_logger()

SCHEMA = """
CREATE TABLE IF NOT EXISTS faculty (
    faculty_id   SERIAL PRIMARY KEY,
    external_id  TEXT NOT NULL UNIQUE,
    short_name   TEXT NOT NULL,
    long_name    TEXT NOT NULL,
    updated_at   TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS specialization (
    specialization_id SERIAL PRIMARY KEY,
    faculty_id        INTEGER NOT NULL REFERENCES faculty(faculty_id) ON DELETE CASCADE,
    short_name        TEXT NOT NULL,
    long_name         TEXT,
    UNIQUE (faculty_id, short_name)
);

CREATE TABLE IF NOT EXISTS teacher (
    teacher_id   SERIAL PRIMARY KEY,
    external_id  TEXT NOT NULL UNIQUE,
    last_name    TEXT NOT NULL,
    first_name   TEXT NOT NULL,
    email        TEXT,
    phone        TEXT,
    faculty_name TEXT,
    faculty_id   INTEGER REFERENCES faculty(faculty_id) ON DELETE SET NULL,
    department   TEXT,
    updated_at   TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS study_group (
    group_id                  SERIAL PRIMARY KEY,
    external_id               TEXT NOT NULL UNIQUE,
    faculty_id                INTEGER NOT NULL REFERENCES faculty(faculty_id),
    faculty_code              TEXT NOT NULL,
    specialization_id         INTEGER REFERENCES specialization(specialization_id) ON DELETE SET NULL,
    specialization_short_name TEXT NOT NULL,
    study_year                INTEGER NOT NULL,
    group_name                TEXT NOT NULL,
    subgroup_index            TEXT,
    is_modular                BOOLEAN NOT NULL DEFAULT FALSE,
    source_timetable_id       TEXT NOT NULL,
    updated_at                TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS lecture (
    lecture_id                SERIAL PRIMARY KEY,
    group_ref                 INTEGER NOT NULL REFERENCES study_group(group_id) ON DELETE CASCADE,
    code                      TEXT NOT NULL,
    title                     TEXT NOT NULL,
    type                      TEXT NOT NULL CHECK (type IN ('LECTURE', 'LAB', 'SEMINAR')),
    room                      TEXT NOT NULL DEFAULT '',
    teacher_display_name      TEXT NOT NULL,
    teacher_last_name         TEXT NOT NULL,
    teacher_first_name        TEXT,
    teacher_external_id       TEXT,
    teacher_id                INTEGER REFERENCES teacher(teacher_id) ON DELETE SET NULL,
    week_day                  SMALLINT NOT NULL CHECK (week_day BETWEEN 1 AND 7),
    start_time                TEXT NOT NULL,
    end_time                  TEXT NOT NULL,
    duration_minutes          INTEGER NOT NULL,
    weeks                     INTEGER[] NOT NULL CHECK (cardinality(weeks) > 0),
    parity                    TEXT NOT NULL CHECK (parity IN ('ODD', 'EVEN', 'ALL')),
    specialization_short_name TEXT NOT NULL,
    study_year                INTEGER NOT NULL,
    updated_at                TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (group_ref, week_day, start_time, code, type)
);

CREATE TABLE IF NOT EXISTS schedule (
    schedule_id  SERIAL PRIMARY KEY,
    group_ref    INTEGER NOT NULL REFERENCES study_group(group_id) ON DELETE CASCADE,
    week_number  INTEGER NOT NULL,
    parity       TEXT NOT NULL CHECK (parity IN ('ODD', 'EVEN', 'ALL')),
    courses      JSONB NOT NULL,
    generated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (group_ref, week_number, parity)
);

CREATE INDEX IF NOT EXISTS idx_lecture_group ON lecture(group_ref, week_day, start_time);
"""

GROUP_COLUMNS = """
    group_id, external_id, faculty_id, faculty_code, specialization_id,
    specialization_short_name, study_year, group_name, subgroup_index,
    is_modular, source_timetable_id
"""


def _group_from_row(row) -> Group:
    return Group(
        group_id=row['group_id'],
        external_id=row['external_id'],
        faculty_id=row['faculty_id'],
        faculty_code=row['faculty_code'],
        specialization_id=row['specialization_id'],
        specialization_short_name=row['specialization_short_name'],
        study_year=row['study_year'],
        group_name=row['group_name'],
        subgroup_index=row['subgroup_index'],
        is_modular=row['is_modular'],
        source_timetable_id=row['source_timetable_id'],
    )


def _lecture_from_row(row) -> Lecture:
    return Lecture(
        lecture_id=row['lecture_id'],
        group_ref=row['group_ref'],
        code=row['code'],
        title=row['title'],
        type=LectureType(row['type']),
        room=row['room'],
        teacher_display_name=row['teacher_display_name'],
        teacher_info=TeacherInfo(
            last_name=row['teacher_last_name'],
            first_name=row['teacher_first_name'],
            external_id=row['teacher_external_id'],
        ),
        teacher_id=row['teacher_id'],
        week_day=row['week_day'],
        start_time=row['start_time'],
        end_time=row['end_time'],
        duration_minutes=row['duration_minutes'],
        weeks=list(row['weeks']),
        parity=Parity(row['parity']),
        specialization_short_name=row['specialization_short_name'],
        study_year=row['study_year'],
    )


class Database:
    """Класс для работы с базой данных."""

    def __init__(self, connection_string: str):
        """
        Инициализация подключения к БД.

        Args:
            connection_string: Строка подключения PostgreSQL
        """
        self.connection_string = connection_string
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Создание пула подключений к БД."""
        if self.pool is None:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=2,
                max_size=20,
                command_timeout=60
            )
            logger.info("database_connected", pool_min=2, pool_max=20)

    async def disconnect(self) -> None:
        """Закрытие пула подключений."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("database_disconnected")

    async def ensure_connected(self) -> None:
        """Гарантирует наличие пула подключений."""
        if self.pool is None:
            await self.connect()

    async def init_schema(self) -> None:
        """Создать таблицы, если их ещё нет."""
        await self.ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("database_schema_ready")

    # ------------ Справочники ------------

    async def upsert_faculty(self, faculty: Faculty) -> int:
        """Записать факультет по внешнему ID, вернуть внутренний ID."""
        await self.ensure_connected()
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                """
                INSERT INTO faculty (external_id, short_name, long_name)
                VALUES ($1, $2, $3)
                ON CONFLICT (external_id) DO UPDATE SET
                    short_name = EXCLUDED.short_name,
                    long_name = EXCLUDED.long_name,
                    updated_at = CURRENT_TIMESTAMP
                RETURNING faculty_id
                """,
                faculty.external_id,
                faculty.short_name,
                faculty.long_name
            )

    async def get_faculties(self) -> list[Faculty]:
        await self.ensure_connected()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT faculty_id, external_id, short_name, long_name FROM faculty ORDER BY faculty_id"
            )
        return [
            Faculty(
                faculty_id=row['faculty_id'],
                external_id=row['external_id'],
                short_name=row['short_name'],
                long_name=row['long_name'],
            )
            for row in rows
        ]

    async def get_specializations(self) -> list[tuple[int, int, str]]:
        """Специальности как (specialization_id, faculty_id, short_name)."""
        await self.ensure_connected()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT specialization_id, faculty_id, short_name FROM specialization"
            )
        return [(row['specialization_id'], row['faculty_id'], row['short_name']) for row in rows]

    async def upsert_teacher(self, teacher: Teacher) -> int:
        """Записать преподавателя по внешнему ID, вернуть внутренний ID."""
        await self.ensure_connected()
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                """
                INSERT INTO teacher (
                    external_id, last_name, first_name, email, phone,
                    faculty_name, faculty_id, department
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (external_id) DO UPDATE SET
                    last_name = EXCLUDED.last_name,
                    first_name = EXCLUDED.first_name,
                    email = EXCLUDED.email,
                    phone = EXCLUDED.phone,
                    faculty_name = EXCLUDED.faculty_name,
                    faculty_id = EXCLUDED.faculty_id,
                    department = EXCLUDED.department,
                    updated_at = CURRENT_TIMESTAMP
                RETURNING teacher_id
                """,
                teacher.external_id,
                teacher.last_name,
                teacher.first_name,
                teacher.email,
                teacher.phone,
                teacher.faculty_name,
                teacher.faculty_id,
                teacher.department
            )

    async def get_teachers(self) -> list[Teacher]:
        await self.ensure_connected()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT teacher_id, external_id, last_name, first_name FROM teacher"
            )
        return [
            Teacher(
                teacher_id=row['teacher_id'],
                external_id=row['external_id'],
                last_name=row['last_name'],
                first_name=row['first_name'],
            )
            for row in rows
        ]

    # ------------ Группы ------------

    async def upsert_group(self, group: Group) -> int:
        """Записать группу по внешнему ID, вернуть внутренний ID."""
        await self.ensure_connected()
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                """
                INSERT INTO study_group (
                    external_id, faculty_id, faculty_code, specialization_id,
                    specialization_short_name, study_year, group_name,
                    subgroup_index, is_modular, source_timetable_id
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (external_id) DO UPDATE SET
                    faculty_id = EXCLUDED.faculty_id,
                    faculty_code = EXCLUDED.faculty_code,
                    specialization_id = EXCLUDED.specialization_id,
                    specialization_short_name = EXCLUDED.specialization_short_name,
                    study_year = EXCLUDED.study_year,
                    group_name = EXCLUDED.group_name,
                    subgroup_index = EXCLUDED.subgroup_index,
                    is_modular = EXCLUDED.is_modular,
                    source_timetable_id = EXCLUDED.source_timetable_id,
                    updated_at = CURRENT_TIMESTAMP
                RETURNING group_id
                """,
                group.external_id,
                group.faculty_id,
                group.faculty_code,
                group.specialization_id,
                group.specialization_short_name,
                group.study_year,
                group.group_name,
                group.subgroup_index,
                group.is_modular,
                group.source_timetable_id
            )

    async def get_group_by_external_id(self, external_id: str) -> Optional[Group]:
        """
        Получить группу по ID из фида.

        Returns:
            Group или None, если группа не синхронизирована
        """
        await self.ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {GROUP_COLUMNS} FROM study_group WHERE external_id = $1",
                external_id
            )
        return _group_from_row(row) if row else None

    async def get_groups(self, external_ids: Optional[Iterable[str]] = None) -> list[Group]:
        """Все группы или только перечисленные."""
        await self.ensure_connected()
        async with self.pool.acquire() as conn:
            if external_ids is None:
                rows = await conn.fetch(
                    f"SELECT {GROUP_COLUMNS} FROM study_group ORDER BY group_id"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {GROUP_COLUMNS} FROM study_group "
                    "WHERE external_id = ANY($1::text[]) ORDER BY group_id",
                    list(external_ids)
                )
        return [_group_from_row(row) for row in rows]

    # ------------ Занятия ------------

    async def upsert_lecture(self, lecture: Lecture, conn: Optional[asyncpg.Connection] = None) -> int:
        """
        Записать занятие по естественному ключу.

        Запись с тем же (group_ref, week_day, start_time, code, type)
        перезаписывается целиком.

        Args:
            lecture: Нормализованное занятие
            conn: Опциональное подключение для переиспользования

        Returns:
            ID занятия
        """
        async def _execute(connection: asyncpg.Connection) -> int:
            return await connection.fetchval(
                """
                INSERT INTO lecture (
                    group_ref, code, title, type, room, teacher_display_name,
                    teacher_last_name, teacher_first_name, teacher_external_id,
                    teacher_id, week_day, start_time, end_time, duration_minutes,
                    weeks, parity, specialization_short_name, study_year
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18)
                ON CONFLICT (group_ref, week_day, start_time, code, type) DO UPDATE SET
                    title = EXCLUDED.title,
                    room = EXCLUDED.room,
                    teacher_display_name = EXCLUDED.teacher_display_name,
                    teacher_last_name = EXCLUDED.teacher_last_name,
                    teacher_first_name = EXCLUDED.teacher_first_name,
                    teacher_external_id = EXCLUDED.teacher_external_id,
                    teacher_id = EXCLUDED.teacher_id,
                    end_time = EXCLUDED.end_time,
                    duration_minutes = EXCLUDED.duration_minutes,
                    weeks = EXCLUDED.weeks,
                    parity = EXCLUDED.parity,
                    specialization_short_name = EXCLUDED.specialization_short_name,
                    study_year = EXCLUDED.study_year,
                    updated_at = CURRENT_TIMESTAMP
                RETURNING lecture_id
                """,
                lecture.group_ref,
                lecture.code,
                lecture.title,
                lecture.type.value,
                lecture.room,
                lecture.teacher_display_name,
                lecture.teacher_info.last_name,
                lecture.teacher_info.first_name,
                lecture.teacher_info.external_id,
                lecture.teacher_id,
                lecture.week_day,
                lecture.start_time,
                lecture.end_time,
                lecture.duration_minutes,
                lecture.weeks,
                lecture.parity.value,
                lecture.specialization_short_name,
                lecture.study_year
            )

        if conn is not None:
            return await _execute(conn)

        await self.ensure_connected()
        async with self.pool.acquire() as connection:
            return await _execute(connection)

    async def upsert_lectures(self, lectures: list[Lecture]) -> list[int]:
        """Записать занятия группы в одной транзакции."""
        if not lectures:
            return []
        async with self.acquire_connection() as conn:
            async with conn.transaction():
                return [await self.upsert_lecture(lecture, conn=conn) for lecture in lectures]

    async def replace_lectures(self, group_id: int, lectures: list[Lecture]) -> list[int]:
        """
        Заменить занятия группы: удалить старые и записать новые.

        Выполняется в одной транзакции, при ошибке прежние занятия остаются.

        Returns:
            ID записанных занятий в порядке lectures
        """
        async with self.acquire_connection() as conn:
            async with conn.transaction():
                status = await conn.execute("DELETE FROM lecture WHERE group_ref = $1", group_id)
                lecture_ids = [await self.upsert_lecture(lecture, conn=conn) for lecture in lectures]
        logger.debug("group_lectures_replaced", group_ref=group_id, deleted=int(status.split()[-1]))
        return lecture_ids

    async def clear_all_lectures(self) -> int:
        """Удалить все занятия. Возвращает число удалённых."""
        await self.ensure_connected()
        async with self.pool.acquire() as conn:
            status = await conn.execute("DELETE FROM lecture")
        deleted = int(status.split()[-1])
        logger.info("lectures_cleared", deleted=deleted)
        return deleted

    async def get_lectures_for_group(self, group_id: int) -> list[Lecture]:
        """Занятия группы в порядке (день недели, время начала)."""
        await self.ensure_connected()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT
                    lecture_id, group_ref, code, title, type, room, teacher_display_name,
                    teacher_last_name, teacher_first_name, teacher_external_id, teacher_id,
                    week_day, start_time, end_time, duration_minutes, weeks, parity,
                    specialization_short_name, study_year
                FROM lecture
                WHERE group_ref = $1
                ORDER BY week_day, start_time, lecture_id
                """,
                group_id
            )
        return [_lecture_from_row(row) for row in rows]

    # ------------ Расписания ------------

    async def upsert_schedule(self, schedule: Schedule, conn: Optional[asyncpg.Connection] = None) -> int:
        """Записать недельное расписание по ключу (group_ref, week_number, parity)."""
        async def _execute(connection: asyncpg.Connection) -> int:
            return await connection.fetchval(
                """
                INSERT INTO schedule (group_ref, week_number, parity, courses)
                VALUES ($1, $2, $3, $4::jsonb)
                ON CONFLICT (group_ref, week_number, parity) DO UPDATE SET
                    courses = EXCLUDED.courses,
                    generated_at = CURRENT_TIMESTAMP
                RETURNING schedule_id
                """,
                schedule.group_ref,
                schedule.week_number,
                schedule.parity.value,
                json.dumps([course.to_dict() for course in schedule.courses], ensure_ascii=False)
            )

        if conn is not None:
            return await _execute(conn)

        await self.ensure_connected()
        async with self.pool.acquire() as connection:
            return await _execute(connection)

    async def replace_schedules(self, group_id: int, schedules: list[Schedule]) -> int:
        """
        Пересобрать расписания группы: удалить старые и записать новые.

        Выполняется в одной транзакции.

        Returns:
            Количество удалённых расписаний
        """
        async with self.acquire_connection() as conn:
            async with conn.transaction():
                status = await conn.execute("DELETE FROM schedule WHERE group_ref = $1", group_id)
                for schedule in schedules:
                    schedule.schedule_id = await self.upsert_schedule(schedule, conn=conn)
        return int(status.split()[-1])

    @asynccontextmanager
    async def acquire_connection(self) -> asyncpg.Connection:
        """Контекстный менеджер для переиспользования соединения."""
        await self.ensure_connected()
        assert self.pool is not None
        connection = await self.pool.acquire()
        try:
            yield connection
        finally:
            await self.pool.release(connection)

    async def __aenter__(self):
        """Контекстный менеджер: вход."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Контекстный менеджер: выход."""
        await self.disconnect()


# Глобальный экземпляр для переиспользования
_db_instance: Optional[Database] = None


async def get_database() -> Database:
    """
    Получить глобальный экземпляр базы данных.

    Returns:
        Подключенный экземпляр Database
    """
    global _db_instance

    if _db_instance is None:
        config = get_config()
        _db_instance = Database(config.database_url)
        await _db_instance.connect()

    return _db_instance
