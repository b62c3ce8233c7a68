"""
Сборка недельных расписаний групп из сохранённых занятий.
"""

from time import perf_counter

import structlog

from .models import Group, Lecture, Parity, Schedule

logger = structlog.get_logger()


def build_schedules(group_ref: int, lectures: list[Lecture]) -> list[Schedule]:
    """
    Разложить занятия группы по корзинам (неделя, чётность).

    Занятие попадает в корзину каждой своей недели; порядок курсов внутри
    корзины - порядок занятий по (день недели, время начала).

    Args:
        group_ref: Внутренний ID группы
        lectures: Занятия группы

    Returns:
        Расписания по возрастанию недели, по одному на непустую корзину
    """
    ordered = sorted(lectures, key=lambda lecture: (lecture.week_day, lecture.start_time))
    buckets: dict[tuple[int, Parity], Schedule] = {}

    for lecture in ordered:
        course = lecture.to_course_view()
        for week in lecture.weeks:
            key = (week, lecture.parity)
            schedule = buckets.get(key)
            if schedule is None:
                schedule = buckets[key] = Schedule(
                    group_ref=group_ref,
                    week_number=week,
                    parity=lecture.parity,
                )
            schedule.courses.append(course)

    parity_order = {Parity.ODD: 0, Parity.EVEN: 1, Parity.ALL: 2}
    return [
        buckets[key]
        for key in sorted(buckets, key=lambda item: (item[0], parity_order[item[1]]))
    ]


class ScheduleAggregator:
    """
    Пересобирает расписания групп в хранилище.

    Args:
        db: Хранилище с get_lectures_for_group и replace_schedules
    """

    def __init__(self, db):
        self.db = db

    async def generate(self, group: Group) -> list[Schedule]:
        """
        Пересобрать расписания одной группы.

        Старые расписания группы удаляются и записываются заново в одной
        транзакции. Группа без занятий даёт пустой список, её старые
        расписания тоже удаляются.
        """
        started = perf_counter()
        lectures = await self.db.get_lectures_for_group(group.group_id)
        if not lectures:
            deleted = await self.db.replace_schedules(group.group_id, [])
            logger.warning(
                "schedule_group_empty",
                group_id=group.external_id,
                group=group.display_name,
                replaced=deleted
            )
            return []

        schedules = build_schedules(group.group_id, lectures)
        deleted = await self.db.replace_schedules(group.group_id, schedules)

        logger.info(
            "schedule_group_generated",
            group_id=group.external_id,
            group=group.display_name,
            lectures=len(lectures),
            schedules=len(schedules),
            replaced=deleted,
            duration=round(perf_counter() - started, 4)
        )
        return schedules
