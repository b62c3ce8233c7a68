"""
Этапы синхронизации: факультеты, группы, преподаватели, занятия, расписания.

Каждый этап вызывается отдельно и возвращает StageReport. Ошибки записей
и групп попадают в отчёт, ошибки хранилища и неожиданные исключения
прерывают этап.
"""

import asyncio
from collections import defaultdict
from time import perf_counter
from typing import Awaitable, Callable, Iterable, Optional

import structlog

from .aggregator import ScheduleAggregator
from .config import Config
from .errors import (
    FatalError,
    GroupLevelError,
    MappingError,
    PayloadError,
    TransientNetworkError,
    ValidationError,
)
from .fetcher import SourceFetcher
from .models import (
    Faculty,
    Group,
    GroupResult,
    Lecture,
    RejectionReason,
    RunReport,
    StageReport,
    Teacher,
    Unresolved,
)
from .normalizer import OccurrenceNormalizer
from .resolver import IdentifierResolver
from .utils import normalize_text, parse_int

logger = structlog.get_logger()

SENTINEL_ID = "0"


def faculty_from_record(record: dict) -> Faculty:
    """
    Факультет из записи фида.

    Raises:
        ValidationError: Запись-заглушка (id "0") или нет обязательных полей
    """
    external_id = normalize_text(record.get("id"))
    short_name = normalize_text(record.get("shortName"))
    if not external_id or external_id == SENTINEL_ID:
        raise ValidationError(RejectionReason.INVALID_RECORD, f"faculty placeholder id={external_id!r}")
    if not short_name:
        raise ValidationError(RejectionReason.INVALID_RECORD, f"faculty {external_id} has no shortName")
    return Faculty(
        external_id=external_id,
        short_name=short_name,
        long_name=normalize_text(record.get("longName")) or short_name,
    )


def group_from_record(record: dict) -> Group:
    """
    Группа из записи фида.

    Записи с "0" в id, orarId, facultyId или studyYear - заглушки.

    Raises:
        ValidationError: Заглушка или неполная запись
    """
    external_id = normalize_text(record.get("id"))
    faculty_code = normalize_text(record.get("facultyId"))
    study_year_raw = normalize_text(record.get("studyYear"))
    source_id = normalize_text(record.get("orarId"))

    for field_name, value in (
            ("id", external_id),
            ("facultyId", faculty_code),
            ("studyYear", study_year_raw),
            ("orarId", source_id),
    ):
        if not value or value == SENTINEL_ID:
            raise ValidationError(
                RejectionReason.INVALID_RECORD,
                f"group id={external_id!r}: placeholder {field_name}={value!r}"
            )

    study_year = parse_int(study_year_raw)
    if study_year is None:
        raise ValidationError(
            RejectionReason.INVALID_RECORD,
            f"group id={external_id!r}: studyYear={study_year_raw!r} is not a number"
        )

    group_name = normalize_text(record.get("groupName"))
    if not group_name:
        raise ValidationError(RejectionReason.INVALID_RECORD, f"group id={external_id!r}: no groupName")

    return Group(
        external_id=external_id,
        faculty_code=faculty_code,
        specialization_short_name=normalize_text(record.get("specializationShortName")),
        study_year=study_year,
        group_name=group_name,
        subgroup_index=normalize_text(record.get("subgroupIndex")) or None,
        is_modular=normalize_text(record.get("isModular")) == "1",
        source_timetable_id=source_id,
    )


def teacher_from_record(record: dict) -> Teacher:
    """
    Преподаватель из справочника кадров.

    Raises:
        ValidationError: Нет ID, имени или фамилии
    """
    external_id = normalize_text(record.get("id"))
    last_name = normalize_text(record.get("lastName"))
    first_name = normalize_text(record.get("firstName"))
    if not external_id or external_id == SENTINEL_ID:
        raise ValidationError(RejectionReason.INVALID_RECORD, f"teacher placeholder id={external_id!r}")
    if not last_name or not first_name:
        raise ValidationError(
            RejectionReason.MISSING_TEACHER_NAME,
            f"teacher {external_id}: first or last name missing"
        )
    return Teacher(
        external_id=external_id,
        last_name=last_name,
        first_name=first_name,
        email=normalize_text(record.get("emailAddress")) or None,
        phone=normalize_text(record.get("phoneNumber")) or None,
        faculty_name=normalize_text(record.get("facultyName")) or None,
        department=normalize_text(record.get("departmentName")) or None,
    )


class SyncPipeline:
    """
    Синхронизация расписания из внешнего сервиса в хранилище.

    Args:
        config: Конфигурация
        db: Хранилище (Database)
        fetcher: Клиент источника
    """

    def __init__(self, config: Config, db, fetcher: SourceFetcher):
        self.config = config
        self.db = db
        self.fetcher = fetcher

    async def sync_faculties(self) -> StageReport:
        """Загрузить факультеты и записать их по внешнему ID."""
        report = StageReport("faculties")
        records = await self.fetcher.fetch_faculties()
        logger.info("faculty_sync_started", fetched=len(records))

        for record in records:
            report.processed += 1
            try:
                faculty = faculty_from_record(record)
            except ValidationError as e:
                report.reject(e.reason, str(e))
                continue
            faculty.faculty_id = await self.db.upsert_faculty(faculty)
            report.stored += 1

        return report.finish()

    async def sync_groups(self) -> StageReport:
        """
        Загрузить группы, сопоставить факультет и специальность, записать.

        Несопоставленный факультет - пропуск группы. Несопоставленная
        специальность - пропуск только при require_specialization.
        """
        report = StageReport("groups")
        resolver = await IdentifierResolver.load(self.db, self.config.faculty_map)
        records = await self.fetcher.fetch_groups()
        logger.info("group_sync_started", fetched=len(records))

        failed_by_faculty: dict[str, dict[str, list[str]]] = defaultdict(lambda: defaultdict(list))

        for record in records:
            report.processed += 1
            try:
                group = group_from_record(record)
                self._resolve_group(group, resolver, report)
            except ValidationError as e:
                report.reject(e.reason, str(e))
                continue
            except MappingError as e:
                label = (
                    f"{group.group_name}{'-' + group.subgroup_index if group.subgroup_index else ''}"
                    f" ({group.specialization_short_name}, year {group.study_year})"
                )
                report.reject(e.reason, f"{label}: {e}")
                failed_by_faculty[group.faculty_code][e.reason.value].append(label)
                continue

            group.group_id = await self.db.upsert_group(group)
            report.stored += 1
            logger.debug("group_stored", group_id=group.external_id, group=group.display_name)

        for faculty_code, by_reason in failed_by_faculty.items():
            for reason, labels in by_reason.items():
                logger.warning(
                    "groups_failed",
                    faculty_code=faculty_code,
                    reason=reason,
                    count=len(labels),
                    groups=labels[:20]
                )

        return report.finish()

    def _resolve_group(self, group: Group, resolver: IdentifierResolver, report: StageReport) -> None:
        faculty_id = resolver.resolve_faculty(group.faculty_code)
        if isinstance(faculty_id, Unresolved):
            raise MappingError("faculty", group.faculty_code, faculty_id.reason)
        group.faculty_id = faculty_id

        specialization_id = resolver.resolve_specialization(group.specialization_short_name, faculty_id)
        if isinstance(specialization_id, Unresolved):
            if self.config.require_specialization:
                raise MappingError("specialization", specialization_id.code, specialization_id.reason)
            report.note(specialization_id.reason)
            specialization_id = None
        group.specialization_id = specialization_id

    async def sync_teachers(self) -> StageReport:
        """Загрузить справочник кадров для сопоставления преподавателей."""
        report = StageReport("teachers")
        resolver = await IdentifierResolver.load(self.db, self.config.faculty_map)
        records = await self.fetcher.fetch_teachers()
        logger.info("teacher_sync_started", fetched=len(records))

        for record in records:
            report.processed += 1
            try:
                teacher = teacher_from_record(record)
            except ValidationError as e:
                report.reject(e.reason, str(e))
                continue

            faculty_id = resolver.resolve_faculty_by_name(teacher.faculty_name)
            if isinstance(faculty_id, Unresolved):
                report.note(faculty_id.reason, f"teacher {teacher.external_id}: faculty {faculty_id.code!r}")
            else:
                teacher.faculty_id = faculty_id

            teacher.teacher_id = await self.db.upsert_teacher(teacher)
            report.stored += 1

        return report.finish()

    async def sync_group_lectures(
            self,
            group_external_id: str,
            resolver: IdentifierResolver,
            normalizer: OccurrenceNormalizer,
            full_refresh: bool = False
    ) -> GroupResult:
        """
        Загрузить, нормализовать и записать занятия одной группы.

        Ошибки уровня группы возвращаются как неуспешный GroupResult,
        ранее сохранённые занятия группы при этом не трогаются.
        При full_refresh старые занятия группы заменяются новыми,
        но только если группа загрузилась и дала хотя бы одно занятие.

        Args:
            group_external_id: ID группы в фиде
            resolver: Справочники для сопоставления преподавателей
            normalizer: Нормализатор записей
            full_refresh: Заменить все занятия группы, а не дописать

        Returns:
            GroupResult с результатами обработки
        """
        timer_start = perf_counter()
        logger.info("lecture_group_started", group_id=group_external_id)
        result = GroupResult(status=True, group_id=group_external_id, details="")

        try:
            group = await self.db.get_group_by_external_id(group_external_id)
            if group is None:
                raise GroupLevelError(group_external_id, RejectionReason.GROUP_NOT_FOUND,
                                      "Group not found in store")

            try:
                payload = await self.fetcher.fetch_group_lectures(group_external_id)
            except (TransientNetworkError, PayloadError) as e:
                raise GroupLevelError(group_external_id, RejectionReason.FETCH_FAILED,
                                      f"{type(e).__name__}: {e}") from e

            lectures: list[Lecture] = []
            for index, entry in enumerate(payload.entries):
                normalized = normalizer.normalize(entry, group)
                if isinstance(normalized, RejectionReason):
                    result.entries_rejected += 1
                    result.reasons[normalized] += 1
                    logger.debug(
                        "lecture_entry_rejected",
                        group_id=group_external_id,
                        group=group.display_name,
                        index=index,
                        reason=normalized.value,
                        week_day=entry.week_day,
                        code=entry.topic_short_name
                    )
                    continue

                teacher_id = resolver.resolve_teacher(normalized.teacher_info)
                if isinstance(teacher_id, Unresolved):
                    result.reasons[teacher_id.reason] += 1
                else:
                    normalized.teacher_id = teacher_id
                lectures.append(normalized)

            if not lectures:
                raise GroupLevelError(group_external_id, RejectionReason.NO_VALID_LECTURES,
                                      f"No valid lectures out of {len(payload.entries)} entries")

            if full_refresh:
                lecture_ids = await self.db.replace_lectures(group.group_id, lectures)
            else:
                lecture_ids = await self.db.upsert_lectures(lectures)
            for lecture, lecture_id in zip(lectures, lecture_ids):
                lecture.lecture_id = lecture_id

            result.lectures_stored = len({lecture.key for lecture in lectures})
            result.details = f"Stored lectures for group {group.display_name}"

            logger.info(
                "lecture_group_completed",
                group_id=group_external_id,
                group=group.display_name,
                entries=len(payload.entries),
                stored=result.lectures_stored,
                overwritten_in_batch=len(lectures) - result.lectures_stored,
                rejected=result.entries_rejected,
                total_seconds=round(perf_counter() - timer_start, 4)
            )

        except GroupLevelError as e:
            logger.warning(
                "lecture_group_failed",
                group_id=group_external_id,
                reason=e.reason.value,
                error=str(e)
            )
            result.status = False
            result.details = "Group skipped"
            result.errors = f"{e.reason.value}: {e}"
            result.reasons[e.reason] += 1

        return result

    async def sync_lectures(
            self,
            group_ids: Optional[Iterable[str]] = None,
            full_refresh: bool = False
    ) -> StageReport:
        """
        Синхронизировать занятия групп параллельно.

        Группы обрабатываются пулом из max_concurrent_groups задач, сбой одной
        группы не влияет на остальные.

        Args:
            group_ids: Внешние ID групп; по умолчанию все сохранённые группы
            full_refresh: Заменять занятия каждой успешно загруженной группы

        Returns:
            Сводка этапа
        """
        report = StageReport("lectures")

        if group_ids is None:
            group_ids = [group.external_id for group in await self.db.get_groups()]
        else:
            group_ids = list(group_ids)

        resolver = await IdentifierResolver.load(self.db, self.config.faculty_map)
        normalizer = OccurrenceNormalizer(self.config.semester_start, self.config.semester_weeks)
        semaphore = asyncio.Semaphore(self.config.max_concurrent_groups)

        async def sync_with_semaphore(gid: str) -> GroupResult:
            async with semaphore:
                return await self.sync_group_lectures(gid, resolver, normalizer, full_refresh)

        logger.info("lecture_batch_started", total_groups=len(group_ids))

        tasks = [sync_with_semaphore(gid) for gid in group_ids]
        results = await asyncio.gather(*tasks)

        for result in results:
            report.merge(result)

        logger.info(
            "lecture_batch_completed",
            total=len(results),
            successful=sum(1 for r in results if r.status),
            failed=report.failed_groups
        )

        return report.finish()

    async def generate_schedules(self, group_ids: Optional[Iterable[str]] = None) -> StageReport:
        """
        Пересобрать недельные расписания групп из сохранённых занятий.

        Группа без занятий считается пустой: расписаний нет, счётчик
        failed_groups увеличивается, исключения нет.
        """
        report = StageReport("schedules")
        requested = None if group_ids is None else list(group_ids)
        groups = await self.db.get_groups(requested)

        if requested is not None:
            found = {group.external_id for group in groups}
            for gid in requested:
                if gid not in found:
                    report.failed_groups += 1
                    report.reject(RejectionReason.GROUP_NOT_FOUND, f"group {gid}")

        aggregator = ScheduleAggregator(self.db)
        for group in groups:
            report.processed += 1
            schedules = await aggregator.generate(group)
            if not schedules:
                report.failed_groups += 1
                report.reasons[RejectionReason.NO_LECTURES] += 1
                report.failures.append(f"group {group.external_id} ({group.display_name}): no lectures")
                continue
            report.stored += len(schedules)

        return report.finish()

    async def clear_lectures(self) -> StageReport:
        """Удалить все сохранённые занятия перед полной перезагрузкой."""
        report = StageReport("clear-lectures")
        report.processed = await self.db.clear_all_lectures()
        return report.finish()

    async def run_stage(self, name: str, stage: Callable[[], Awaitable[StageReport]]) -> StageReport:
        """
        Выполнить этап; любое непойманное исключение становится FatalError.
        """
        logger.info("stage_started", stage=name)
        try:
            report = await stage()
        except Exception as e:
            logger.error("stage_failed", stage=name, error=str(e), exc_info=True)
            raise FatalError(name, e) from e
        report.log_summary()
        return report

    async def run_all(self, full_refresh: bool = False) -> RunReport:
        """
        Полный запуск: факультеты -> группы -> преподаватели -> занятия -> расписания.

        Первый упавший этап прерывает запуск; записи предыдущих этапов
        остаются в хранилище.

        Raises:
            FatalError: Этап завершился исключением
        """
        run = RunReport()
        stages = (
            ("faculties", self.sync_faculties),
            ("groups", self.sync_groups),
            ("teachers", self.sync_teachers),
            ("lectures", lambda: self.sync_lectures(full_refresh=full_refresh)),
            ("schedules", self.generate_schedules),
        )
        for name, stage in stages:
            run.stages.append(await self.run_stage(name, stage))

        logger.info(
            "run_completed",
            stages=len(run.stages),
            skipped=run.total_skipped,
            failed_groups=run.total_failed_groups
        )
        return run
