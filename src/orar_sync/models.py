"""
Модели данных синхронизации расписания.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

import structlog

logger = structlog.get_logger()


class Parity(str, Enum):
    """Чётность недели, в которую проходит занятие."""
    ODD = "ODD"
    EVEN = "EVEN"
    ALL = "ALL"


class LectureType(str, Enum):
    """Вид занятия."""
    LECTURE = "LECTURE"
    LAB = "LAB"
    SEMINAR = "SEMINAR"


class RejectionReason(str, Enum):
    """Причина, по которой запись или группа не попала в хранилище."""
    # Записи занятий
    INVALID_WEEKDAY = "INVALID_WEEKDAY"
    NO_WEEKS_RESOLVED = "NO_WEEKS_RESOLVED"
    INVALID_START_TIME = "INVALID_START_TIME"
    INVALID_DURATION = "INVALID_DURATION"
    MISSING_CODE = "MISSING_CODE"
    MISSING_TEACHER = "MISSING_TEACHER"
    # Справочники
    INVALID_RECORD = "INVALID_RECORD"
    MISSING_TEACHER_NAME = "MISSING_TEACHER_NAME"
    FACULTY_NOT_FOUND = "FACULTY_NOT_FOUND"
    SPECIALIZATION_NOT_FOUND = "SPECIALIZATION_NOT_FOUND"
    TEACHER_NOT_FOUND = "TEACHER_NOT_FOUND"
    # Группы целиком
    GROUP_NOT_FOUND = "GROUP_NOT_FOUND"
    FETCH_FAILED = "FETCH_FAILED"
    NO_VALID_LECTURES = "NO_VALID_LECTURES"
    NO_LECTURES = "NO_LECTURES"


@dataclass(frozen=True)
class Unresolved:
    """
    Результат неудачного сопоставления идентификатора.

    Attributes:
        entity: Тип сущности (faculty, specialization, teacher)
        code: Исходный код или имя из фида
        reason: Причина для отчёта
    """
    entity: str
    code: str
    reason: RejectionReason

    def __bool__(self) -> bool:
        return False


@dataclass
class Faculty:
    """Факультет из фида."""
    external_id: str
    short_name: str
    long_name: str
    faculty_id: Optional[int] = None


@dataclass
class Group:
    """
    Учебная группа (подгруппа).

    Attributes:
        external_id: ID группы в фиде
        faculty_code: Код факультета в фиде
        specialization_short_name: Краткое название специальности
        study_year: Курс
        group_name: Номер группы, например "3141"
        subgroup_index: Буква подгруппы или None
        is_modular: Модульная группа
        source_timetable_id: ID расписания группы в источнике (orarId)
        group_id: Внутренний ID в хранилище
        faculty_id: Внутренний ID факультета
        specialization_id: Внутренний ID специальности (может отсутствовать)
    """
    external_id: str
    faculty_code: str
    specialization_short_name: str
    study_year: int
    group_name: str
    subgroup_index: Optional[str] = None
    is_modular: bool = False
    source_timetable_id: str = ""
    group_id: Optional[int] = None
    faculty_id: Optional[int] = None
    specialization_id: Optional[int] = None

    @property
    def display_name(self) -> str:
        """Название для логов: специальность, номер и подгруппа."""
        return f"{self.specialization_short_name}{self.group_name}{self.subgroup_index or ''}"


@dataclass
class Teacher:
    """Преподаватель из справочника кадров."""
    external_id: str
    last_name: str
    first_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    faculty_name: Optional[str] = None
    department: Optional[str] = None
    faculty_id: Optional[int] = None
    teacher_id: Optional[int] = None


@dataclass
class TeacherInfo:
    """Имя преподавателя в том виде, в каком его отдаёт фид."""
    last_name: str
    first_name: Optional[str] = None
    external_id: Optional[str] = None


@dataclass
class CourseView:
    """Проекция занятия внутри недельного расписания."""
    lecture_ref: Optional[int]
    code: str
    title: str
    type: LectureType
    start_time: str
    end_time: str
    room: str
    teacher_display_name: str
    week_day: int

    def to_dict(self) -> dict:
        return {
            "lectureRef": self.lecture_ref,
            "code": self.code,
            "title": self.title,
            "type": self.type.value,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "room": self.room,
            "teacherDisplayName": self.teacher_display_name,
            "weekDay": self.week_day,
        }


@dataclass
class Lecture:
    """
    Нормализованное занятие группы.

    Уникально по (group_ref, week_day, start_time, code, type): повторная
    загрузка перезаписывает запись целиком.

    Attributes:
        group_ref: Внутренний ID группы
        code: Краткое название дисциплины
        title: Полное название дисциплины
        type: Вид занятия
        room: Аудитория
        teacher_display_name: "Фамилия И."
        teacher_info: Имя преподавателя из фида
        week_day: День недели (1 - понедельник, 7 - воскресенье)
        start_time: Время начала "HH:MM"
        end_time: Время окончания "HH:MM"
        duration_minutes: Длительность в минутах
        weeks: Номера учебных недель (непустой, по возрастанию)
        parity: Чётность
        specialization_short_name: Специальность группы
        study_year: Курс группы
        teacher_id: Внутренний ID преподавателя, если сопоставлен
        lecture_id: Внутренний ID занятия в хранилище
    """
    group_ref: int
    code: str
    title: str
    type: LectureType
    room: str
    teacher_display_name: str
    teacher_info: TeacherInfo
    week_day: int
    start_time: str
    end_time: str
    duration_minutes: int
    weeks: list[int]
    parity: Parity
    specialization_short_name: str
    study_year: int
    teacher_id: Optional[int] = None
    lecture_id: Optional[int] = None

    @property
    def key(self) -> tuple[int, int, str, str, str]:
        """Естественный ключ занятия."""
        return (self.group_ref, self.week_day, self.start_time, self.code, self.type.value)

    def to_course_view(self) -> CourseView:
        return CourseView(
            lecture_ref=self.lecture_id,
            code=self.code,
            title=self.title,
            type=self.type,
            start_time=self.start_time,
            end_time=self.end_time,
            room=self.room,
            teacher_display_name=self.teacher_display_name,
            week_day=self.week_day,
        )

    def __repr__(self) -> str:
        return (
            f"Lecture({self.code} {self.type.value}, "
            f"day={self.week_day}, "
            f"time={self.start_time}-{self.end_time}, "
            f"parity={self.parity.value}, "
            f"weeks={self.weeks})"
        )


@dataclass
class Schedule:
    """Расписание группы на одну учебную неделю. Полностью выводится из занятий."""
    group_ref: int
    week_number: int
    parity: Parity
    courses: list[CourseView] = field(default_factory=list)
    schedule_id: Optional[int] = None

    @property
    def key(self) -> tuple[int, int, str]:
        return (self.group_ref, self.week_number, self.parity.value)


@dataclass
class GroupResult:
    """
    Результат обработки одной группы.

    Attributes:
        status: Успешность обработки
        group_id: Внешний ID группы
        details: Описание результата
        lectures_stored: Количество записанных занятий
        entries_rejected: Количество отброшенных записей
        reasons: Причины отказа по записям
        errors: Описание ошибки группы (если была)
        parsed_at: Время обработки
    """
    status: bool
    group_id: str
    details: str
    lectures_stored: int = 0
    entries_rejected: int = 0
    reasons: Counter = field(default_factory=Counter)
    errors: Optional[str] = None
    parsed_at: datetime = field(default_factory=datetime.now)

    def __repr__(self) -> str:
        status_str = "✓" if self.status else "✗"
        return (
            f"GroupResult({status_str} group_id={self.group_id}, "
            f"stored={self.lectures_stored}, rejected={self.entries_rejected}, "
            f"errors={self.errors})"
        )


@dataclass
class StageReport:
    """
    Сводка по этапу синхронизации.

    Attributes:
        stage: Название этапа
        processed: Сколько записей или групп рассмотрено
        stored: Сколько записей записано
        skipped: Сколько записей отброшено
        failed_groups: Сколько групп не обработано
        reasons: Счётчик причин отказа
        failures: Человекочитаемые описания отказов
    """
    stage: str
    processed: int = 0
    stored: int = 0
    skipped: int = 0
    failed_groups: int = 0
    reasons: Counter = field(default_factory=Counter)
    failures: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    def reject(self, reason: RejectionReason, description: Optional[str] = None) -> None:
        """Учесть отброшенную запись."""
        self.skipped += 1
        self.reasons[reason] += 1
        if description:
            self.failures.append(f"{reason.value}: {description}")

    def note(self, reason: RejectionReason, description: Optional[str] = None) -> None:
        """Учесть предупреждение, не отбрасывая запись."""
        self.reasons[reason] += 1
        if description:
            self.failures.append(f"{reason.value}: {description}")

    def merge(self, result: GroupResult) -> None:
        """Добавить результат обработки группы."""
        self.processed += 1
        self.stored += result.lectures_stored
        self.skipped += result.entries_rejected
        self.reasons.update(result.reasons)
        if not result.status:
            self.failed_groups += 1
            self.failures.append(f"group {result.group_id}: {result.errors or result.details}")

    def finish(self) -> "StageReport":
        self.finished_at = datetime.now()
        return self

    @property
    def duration(self) -> float:
        end = self.finished_at or datetime.now()
        return (end - self.started_at).total_seconds()

    def log_summary(self) -> None:
        """Вывести итог этапа в лог."""
        logger.info(
            "stage_summary",
            stage=self.stage,
            processed=self.processed,
            stored=self.stored,
            skipped=self.skipped,
            failed_groups=self.failed_groups,
            reasons={reason.value: count for reason, count in self.reasons.most_common()},
            duration=round(self.duration, 4),
        )
        for failure in self.failures[:50]:
            logger.warning("stage_failure", stage=self.stage, failure=failure)
        if len(self.failures) > 50:
            logger.warning("stage_failures_truncated", stage=self.stage, remaining=len(self.failures) - 50)


@dataclass
class RunReport:
    """Итог полного запуска: отчёты этапов в порядке выполнения."""
    stages: list[StageReport] = field(default_factory=list)

    def stage(self, name: str) -> Optional[StageReport]:
        for report in self.stages:
            if report.stage == name:
                return report
        return None

    @property
    def total_skipped(self) -> int:
        return sum(report.skipped for report in self.stages)

    @property
    def total_failed_groups(self) -> int:
        return sum(report.failed_groups for report in self.stages)
