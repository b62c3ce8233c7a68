"""
Сопоставление внешних кодов фида внутренним идентификаторам.

Поиск идёт по уже синхронизированным справочникам: точное совпадение
или совпадение без учёта регистра. Промах возвращает Unresolved,
решение о пропуске записи принимает вызывающий код.
"""

from typing import Iterable, Optional, Union

import structlog

from .models import Faculty, RejectionReason, Teacher, TeacherInfo, Unresolved
from .utils import normalize_text

logger = structlog.get_logger()


def _fold(value: Optional[str]) -> str:
    return normalize_text(value).casefold()


class IdentifierResolver:
    """
    Справочники факультетов, специальностей и преподавателей в памяти.

    Args:
        faculties: Синхронизированные факультеты (с faculty_id)
        specializations: Тройки (specialization_id, faculty_id, short_name)
        teachers: Синхронизированные преподаватели (с teacher_id)
        faculty_map: Код факультета в фиде -> канонический код
    """

    def __init__(
            self,
            faculties: Iterable[Faculty] = (),
            specializations: Iterable[tuple[int, int, str]] = (),
            teachers: Iterable[Teacher] = (),
            faculty_map: Optional[dict[str, str]] = None
    ):
        self.faculty_map = dict(faculty_map or {})

        self._faculty_by_external: dict[str, int] = {}
        self._faculty_by_short: dict[str, int] = {}
        self._faculty_by_long: dict[str, int] = {}
        for faculty in faculties:
            if faculty.faculty_id is None:
                continue
            self._faculty_by_external[normalize_text(faculty.external_id)] = faculty.faculty_id
            self._faculty_by_short.setdefault(_fold(faculty.short_name), faculty.faculty_id)
            self._faculty_by_long.setdefault(_fold(faculty.long_name), faculty.faculty_id)

        self._specializations: dict[tuple[int, str], int] = {
            (faculty_id, _fold(short_name)): specialization_id
            for specialization_id, faculty_id, short_name in specializations
        }

        self._teacher_by_external: dict[str, int] = {}
        self._teacher_by_name: dict[tuple[str, str], int] = {}
        for teacher in teachers:
            if teacher.teacher_id is None:
                continue
            self._teacher_by_external[normalize_text(teacher.external_id)] = teacher.teacher_id
            self._teacher_by_name.setdefault(
                (_fold(teacher.last_name), _fold(teacher.first_name)), teacher.teacher_id
            )

    @classmethod
    async def load(cls, db, faculty_map: Optional[dict[str, str]] = None) -> "IdentifierResolver":
        """Построить резолвер по справочникам из хранилища."""
        faculties = await db.get_faculties()
        specializations = await db.get_specializations()
        teachers = await db.get_teachers()
        logger.info(
            "resolver_loaded",
            faculties=len(faculties),
            specializations=len(specializations),
            teachers=len(teachers),
            mapped_codes=len(faculty_map or {})
        )
        return cls(faculties, specializations, teachers, faculty_map)

    def resolve_faculty(self, code: Optional[str]) -> Union[int, Unresolved]:
        """
        Факультет по коду из фида.

        Код сначала проводится через таблицу соответствия, затем ищется
        среди внешних ID и кратких названий факультетов.
        """
        raw = normalize_text(code)
        if not raw:
            return Unresolved("faculty", raw, RejectionReason.FACULTY_NOT_FOUND)

        mapped = self.faculty_map.get(raw, raw)
        faculty_id = self._faculty_by_external.get(mapped)
        if faculty_id is None:
            faculty_id = self._faculty_by_short.get(mapped.casefold())
        if faculty_id is None:
            return Unresolved("faculty", raw, RejectionReason.FACULTY_NOT_FOUND)
        return faculty_id

    def resolve_faculty_by_name(self, name: Optional[str]) -> Union[int, Unresolved]:
        """Факультет по полному или краткому названию (справочник кадров)."""
        key = _fold(name)
        faculty_id = self._faculty_by_long.get(key) or self._faculty_by_short.get(key)
        if not key or faculty_id is None:
            return Unresolved("faculty", normalize_text(name), RejectionReason.FACULTY_NOT_FOUND)
        return faculty_id

    def resolve_specialization(self, name: Optional[str], faculty_id: int) -> Union[int, Unresolved]:
        specialization_id = self._specializations.get((faculty_id, _fold(name)))
        if specialization_id is None:
            return Unresolved(
                "specialization",
                f"{normalize_text(name)}@{faculty_id}",
                RejectionReason.SPECIALIZATION_NOT_FOUND
            )
        return specialization_id

    def resolve_teacher(self, ref: TeacherInfo) -> Union[int, Unresolved]:
        """Преподаватель по внешнему ID, иначе по фамилии и имени."""
        if ref.external_id:
            teacher_id = self._teacher_by_external.get(normalize_text(ref.external_id))
            if teacher_id is not None:
                return teacher_id

        teacher_id = self._teacher_by_name.get((_fold(ref.last_name), _fold(ref.first_name)))
        if teacher_id is None:
            code = " ".join(part for part in (ref.last_name, ref.first_name) if part)
            return Unresolved("teacher", code, RejectionReason.TEACHER_NOT_FOUND)
        return teacher_id
