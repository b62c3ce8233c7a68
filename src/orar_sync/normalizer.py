"""
Нормализация записей занятий фида в канонические Lecture.
"""

from datetime import date
from typing import Optional, Union

from .fetcher import RawLectureEntry
from .models import Group, Lecture, RejectionReason, TeacherInfo
from .utils import (
    MINUTES_PER_DAY,
    format_minutes,
    format_teacher,
    map_lecture_type,
    map_parity,
    normalize_text,
    parse_int,
    parse_weeks,
)


class OccurrenceNormalizer:
    """
    Превращает запись фида в Lecture или причину отказа.

    Args:
        semester_start: Дата начала семестра (неделя 1)
        semester_weeks: Число недель для вывода по чётности
    """

    def __init__(self, semester_start: date, semester_weeks: int = 14):
        self.semester_start = semester_start
        self.semester_weeks = semester_weeks

    def normalize(
            self,
            entry: RawLectureEntry,
            group: Group,
            teacher_id: Optional[int] = None
    ) -> Union[Lecture, RejectionReason]:
        """
        Нормализовать одну запись.

        Порядок проверок:
        1. День недели - целое 1..7
        2. Вид занятия и чётность (неизвестные коды - LECTURE и ALL)
        3. Недели: даты, диапазон, одна неделя, по чётности
        4. Время начала и окончания из смещения в минутах
        5. Преподаватель и код дисциплины

        Args:
            entry: Запись фида
            group: Группа с заполненным group_id
            teacher_id: ID преподавателя, если уже сопоставлен

        Returns:
            Lecture или RejectionReason
        """
        week_day = parse_int(entry.week_day)
        if week_day is None or not 1 <= week_day <= 7:
            return RejectionReason.INVALID_WEEKDAY

        lecture_type = map_lecture_type(entry.type_short_name)
        parity = map_parity(entry.parity)

        weeks = parse_weeks(entry.other_info, parity, self.semester_start, self.semester_weeks)
        weeks = sorted({week for week in weeks if 1 <= week <= self.semester_weeks})
        if not weeks:
            return RejectionReason.NO_WEEKS_RESOLVED

        start_minutes = parse_int(entry.start_hour)
        if start_minutes is None or not 0 <= start_minutes < MINUTES_PER_DAY:
            return RejectionReason.INVALID_START_TIME

        duration = parse_int(entry.duration)
        if duration is None or duration <= 0 or start_minutes + duration > MINUTES_PER_DAY:
            return RejectionReason.INVALID_DURATION

        last_name = normalize_text(entry.teacher_last_name)
        if not last_name:
            return RejectionReason.MISSING_TEACHER
        first_name = normalize_text(entry.teacher_first_name) or None

        code = normalize_text(entry.topic_short_name)
        if not code:
            return RejectionReason.MISSING_CODE

        return Lecture(
            group_ref=group.group_id,
            code=code,
            title=normalize_text(entry.topic_long_name) or code,
            type=lecture_type,
            room=normalize_text(entry.room_short_name),
            teacher_display_name=format_teacher(last_name, first_name),
            teacher_info=TeacherInfo(
                last_name=last_name,
                first_name=first_name,
                external_id=normalize_text(entry.teacher_id) or None,
            ),
            week_day=week_day,
            start_time=format_minutes(start_minutes),
            end_time=format_minutes(start_minutes + duration),
            duration_minutes=duration,
            weeks=weeks,
            parity=parity,
            specialization_short_name=group.specialization_short_name,
            study_year=group.study_year,
            teacher_id=teacher_id,
        )
