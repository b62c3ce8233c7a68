"""
Тесты этапов синхронизации и оркестратора.
"""

import pytest

from conftest import lecture_entry, make_fetcher
from orar_sync.errors import FatalError, PayloadError, TransientNetworkError, ValidationError
from orar_sync.models import (
    Faculty,
    Group,
    GroupResult,
    LectureType,
    Parity,
    RejectionReason,
    StageReport,
    Teacher,
)
from orar_sync.pipeline import (
    SyncPipeline,
    faculty_from_record,
    group_from_record,
    teacher_from_record,
)

FACULTIES = [
    {"id": "0", "shortName": "", "longName": ""},
    {"id": "1", "shortName": "FIESC", "longName": "Facultatea de Inginerie Electrica si Stiinta Calculatoarelor"},
    {"id": "2", "shortName": "FEFS", "longName": "Facultatea de Educatie Fizica si Sport"},
]


def group_record(**overrides) -> dict:
    record = {
        "id": "101",
        "type": "0",
        "facultyId": "1",
        "groupName": "3141",
        "subgroupIndex": "a",
        "specializationShortName": "C",
        "studyYear": "3",
        "isModular": "0",
        "orarId": "555",
    }
    record.update(overrides)
    return record


async def seed_group(db, external_id="101", group_name="3141") -> Group:
    faculty_id = await db.upsert_faculty(Faculty("1", "FIESC", "Inginerie"))
    group = Group(
        external_id=external_id,
        faculty_code="1",
        specialization_short_name="C",
        study_year=3,
        group_name=group_name,
        subgroup_index="a",
        source_timetable_id="555",
        faculty_id=faculty_id,
    )
    group.group_id = await db.upsert_group(group)
    return group


class TestRecordConversion:
    """Тесты разбора записей справочников."""

    def test_group_record(self):
        group = group_from_record(group_record(isModular="1", subgroupIndex=""))

        assert group.external_id == "101"
        assert group.study_year == 3
        assert group.is_modular is True
        assert group.subgroup_index is None
        assert group.source_timetable_id == "555"

    @pytest.mark.parametrize("overrides", [
        {"id": "0"},
        {"orarId": "0"},
        {"facultyId": "0"},
        {"studyYear": "0"},
        {"studyYear": "III"},
        {"groupName": ""},
        {"orarId": None},
    ])
    def test_invalid_group_record(self, overrides):
        with pytest.raises(ValidationError) as exc_info:
            group_from_record(group_record(**overrides))

        assert exc_info.value.reason == RejectionReason.INVALID_RECORD

    def test_faculty_placeholder(self):
        with pytest.raises(ValidationError):
            faculty_from_record(FACULTIES[0])

    def test_faculty_long_name_defaults_to_short(self):
        assert faculty_from_record({"id": "3", "shortName": "FS"}).long_name == "FS"

    def test_teacher_without_first_name(self):
        with pytest.raises(ValidationError) as exc_info:
            teacher_from_record({"id": "300", "lastName": "Popescu", "firstName": ""})

        assert exc_info.value.reason == RejectionReason.MISSING_TEACHER_NAME


@pytest.mark.asyncio
class TestReferenceStages:
    """Тесты синхронизации факультетов, групп и преподавателей."""

    async def test_sync_faculties(self, config, fake_db):
        pipeline = SyncPipeline(config, fake_db, make_fetcher(faculties=FACULTIES))

        report = await pipeline.sync_faculties()

        assert report.processed == 3
        assert report.stored == 2
        assert report.skipped == 1
        assert report.reasons[RejectionReason.INVALID_RECORD] == 1
        assert set(fake_db.faculties) == {"1", "2"}
        assert report.finished_at is not None

    async def test_sync_groups(self, config, fake_db):
        await SyncPipeline(config, fake_db, make_fetcher(faculties=FACULTIES)).sync_faculties()
        fake_db.specializations.append((50, fake_db.faculties["1"].faculty_id, "C"))
        records = [
            group_record(),
            group_record(id="102", specializationShortName="AIA"),
            group_record(id="103", facultyId="9"),
            group_record(id="104", studyYear="0"),
        ]
        pipeline = SyncPipeline(config, fake_db, make_fetcher(groups=records))

        report = await pipeline.sync_groups()

        assert report.processed == 4
        assert report.stored == 2
        assert report.skipped == 2
        assert report.reasons[RejectionReason.FACULTY_NOT_FOUND] == 1
        assert report.reasons[RejectionReason.INVALID_RECORD] == 1
        assert report.reasons[RejectionReason.SPECIALIZATION_NOT_FOUND] == 1
        assert fake_db.groups["101"].specialization_id == 50
        assert fake_db.groups["102"].specialization_id is None
        assert fake_db.groups["101"].faculty_id == fake_db.faculties["1"].faculty_id

    async def test_sync_groups_through_faculty_map(self, config, fake_db):
        await fake_db.upsert_faculty(Faculty("FIESC", "FIESC", "Inginerie"))
        config.faculty_map = {"1": "FIESC"}
        pipeline = SyncPipeline(config, fake_db, make_fetcher(groups=[group_record()]))

        report = await pipeline.sync_groups()

        assert report.stored == 1
        assert "101" in fake_db.groups

    async def test_sync_groups_requires_specialization(self, config, fake_db):
        await fake_db.upsert_faculty(Faculty("1", "FIESC", "Inginerie"))
        config.require_specialization = True
        pipeline = SyncPipeline(config, fake_db, make_fetcher(groups=[group_record()]))

        report = await pipeline.sync_groups()

        assert report.stored == 0
        assert report.skipped == 1
        assert report.reasons[RejectionReason.SPECIALIZATION_NOT_FOUND] == 1
        assert fake_db.groups == {}

    async def test_sync_teachers(self, config, fake_db):
        await fake_db.upsert_faculty(Faculty("1", "FIESC", "Facultatea de Inginerie"))
        records = [
            {"id": "300", "lastName": "Popescu", "firstName": "Ion", "facultyName": "facultatea de inginerie"},
            {"id": "301", "lastName": "Ionescu", "firstName": "Maria", "facultyName": "Rectorat"},
            {"id": "302", "lastName": "", "firstName": "Ana"},
        ]
        pipeline = SyncPipeline(config, fake_db, make_fetcher(teachers=records))

        report = await pipeline.sync_teachers()

        assert report.stored == 2
        assert report.skipped == 1
        assert report.reasons[RejectionReason.MISSING_TEACHER_NAME] == 1
        assert report.reasons[RejectionReason.FACULTY_NOT_FOUND] == 1
        assert fake_db.teachers["300"].faculty_id == fake_db.faculties["1"].faculty_id
        assert fake_db.teachers["301"].faculty_id is None


@pytest.mark.asyncio
class TestLectureStage:
    """Тесты синхронизации занятий групп."""

    async def test_stores_valid_and_counts_rejected(self, config, fake_db):
        group = await seed_group(fake_db)
        fetcher = make_fetcher(lectures={"101": [[lecture_entry(), lecture_entry(weekDay="abc")], []]})

        report = await SyncPipeline(config, fake_db, fetcher).sync_lectures()

        assert report.processed == 1
        assert report.stored == 1
        assert report.skipped == 1
        assert report.failed_groups == 0
        assert report.reasons[RejectionReason.INVALID_WEEKDAY] == 1

        [lecture] = fake_db.lectures.values()
        assert lecture.group_ref == group.group_id
        assert lecture.type == LectureType.LAB
        assert lecture.parity == Parity.ODD
        assert lecture.weeks == [1, 3, 5, 7, 9, 11, 13]
        assert lecture.teacher_display_name == "Popescu I."
        assert lecture.start_time == "09:00"
        assert lecture.end_time == "11:00"

    async def test_teacher_resolved_or_noted(self, config, fake_db):
        await seed_group(fake_db)
        teacher_id = await fake_db.upsert_teacher(Teacher("300", "Popescu", "Ion Mihai"))
        entries = [lecture_entry(), lecture_entry(weekDay="2", teacherLastName="Vasile", teacherFirstName="Dan")]
        fetcher = make_fetcher(lectures={"101": [entries, []]})

        report = await SyncPipeline(config, fake_db, fetcher).sync_lectures()

        assert report.stored == 2
        assert report.skipped == 0
        assert report.reasons[RejectionReason.TEACHER_NOT_FOUND] == 1
        by_day = {lecture.week_day: lecture for lecture in fake_db.lectures.values()}
        assert by_day[1].teacher_id == teacher_id
        assert by_day[2].teacher_id is None

    async def test_group_without_valid_lectures(self, config, fake_db):
        group = await seed_group(fake_db)
        fetcher = make_fetcher(lectures={"101": [[lecture_entry(weekDay="x"), lecture_entry(topicShortName="")], []]})
        pipeline = SyncPipeline(config, fake_db, fetcher)

        report = await pipeline.sync_lectures()
        schedules = await pipeline.generate_schedules()

        assert report.failed_groups == 1
        assert report.skipped == 2
        assert report.reasons[RejectionReason.NO_VALID_LECTURES] == 1
        assert fake_db.lectures == {}
        assert schedules.failed_groups == 1
        assert schedules.stored == 0
        assert schedules.reasons[RejectionReason.NO_LECTURES] == 1
        assert fake_db.schedules_for(group.group_id) == []

    async def test_fetch_failure_keeps_previous_lectures(self, config, fake_db):
        await seed_group(fake_db)
        await SyncPipeline(
            config, fake_db, make_fetcher(lectures={"101": [[lecture_entry()], []]})
        ).sync_lectures()

        fetcher = make_fetcher()
        fetcher.fetch_group_lectures.side_effect = TransientNetworkError("timeout")
        report = await SyncPipeline(config, fake_db, fetcher).sync_lectures()

        assert report.failed_groups == 1
        assert report.reasons[RejectionReason.FETCH_FAILED] == 1
        assert len(fake_db.lectures) == 1

    async def test_malformed_payload_fails_group_only(self, config, fake_db):
        await seed_group(fake_db, "101", "3141")
        await seed_group(fake_db, "102", "3142")
        fetcher = make_fetcher(lectures={"101": {"error": "maintenance"}, "102": [[lecture_entry()], []]})

        report = await SyncPipeline(config, fake_db, fetcher).sync_lectures()

        assert report.processed == 2
        assert report.failed_groups == 1
        assert report.stored == 1
        assert any("101" in failure for failure in report.failures)

    async def test_unknown_group(self, config, fake_db):
        fetcher = make_fetcher()

        report = await SyncPipeline(config, fake_db, fetcher).sync_lectures(["404"])

        assert report.failed_groups == 1
        assert report.reasons[RejectionReason.GROUP_NOT_FOUND] == 1
        fetcher.fetch_group_lectures.assert_not_awaited()

    async def test_many_groups_with_bounded_pool(self, config, fake_db):
        ids = [str(100 + i) for i in range(6)]
        for gid in ids:
            await seed_group(fake_db, gid, f"31{gid}")
        fetcher = make_fetcher(lectures={gid: [[lecture_entry()], []] for gid in ids})

        report = await SyncPipeline(config, fake_db, fetcher).sync_lectures()

        assert report.processed == 6
        assert report.stored == 6
        assert fetcher.fetch_group_lectures.await_count == 6

    async def test_full_refresh_clears_lectures(self, config, fake_db):
        await seed_group(fake_db)
        await SyncPipeline(
            config, fake_db, make_fetcher(lectures={"101": [[lecture_entry(topicShortName="OLD")], []]})
        ).sync_lectures()

        fetcher = make_fetcher(lectures={"101": [[lecture_entry(topicShortName="NEW")], []]})
        await SyncPipeline(config, fake_db, fetcher).sync_lectures(full_refresh=True)

        assert [lecture.code for lecture in fake_db.lectures.values()] == ["NEW"]

    async def test_full_refresh_keeps_lectures_of_failed_groups(self, config, fake_db):
        groups = {gid: await seed_group(fake_db, gid, f"314{gid[-1]}") for gid in ("101", "102", "103")}
        await SyncPipeline(config, fake_db, make_fetcher(lectures={
            gid: [[lecture_entry(topicShortName="OLD")], []] for gid in groups
        })).sync_lectures()

        # 101 не отвечает, у 102 нет корректных записей, 103 загружается
        fetcher = make_fetcher(lectures={
            "102": [[lecture_entry(weekDay="x")], []],
            "103": [[lecture_entry(topicShortName="NEW")], []],
        })
        report = await SyncPipeline(config, fake_db, fetcher).sync_lectures(full_refresh=True)

        external_ids = {group.group_id: gid for gid, group in groups.items()}
        codes = {external_ids[lecture.group_ref]: lecture.code for lecture in fake_db.lectures.values()}
        assert codes == {"101": "OLD", "102": "OLD", "103": "NEW"}
        assert report.failed_groups == 2
        assert report.reasons[RejectionReason.FETCH_FAILED] == 1
        assert report.reasons[RejectionReason.NO_VALID_LECTURES] == 1

    async def test_clear_lectures(self, config, fake_db):
        await seed_group(fake_db)
        pipeline = SyncPipeline(config, fake_db, make_fetcher(lectures={"101": [[lecture_entry()], []]}))
        await pipeline.sync_lectures()

        report = await pipeline.clear_lectures()

        assert report.stage == "clear-lectures"
        assert report.processed == 1
        assert fake_db.lectures == {}


@pytest.mark.asyncio
class TestIdempotence:
    """Повторная загрузка тех же данных не создаёт дублей."""

    async def test_repeated_sync_and_generation(self, config, fake_db):
        group = await seed_group(fake_db)
        entries = [
            lecture_entry(),
            lecture_entry(weekDay="3", startHour="600", typeShortName="curs", parity="", otherInfo="S1-S3"),
        ]
        pipeline = SyncPipeline(config, fake_db, make_fetcher(lectures={"101": [entries, []]}))

        await pipeline.sync_lectures()
        await pipeline.generate_schedules()
        lectures_first = {key: (l.lecture_id, l.weeks, l.end_time) for key, l in fake_db.lectures.items()}
        schedules_first = {key: [c.to_dict() for c in s.courses] for key, s in fake_db.schedules.items()}

        await pipeline.sync_lectures()
        report = await pipeline.generate_schedules()
        lectures_second = {key: (l.lecture_id, l.weeks, l.end_time) for key, l in fake_db.lectures.items()}
        schedules_second = {key: [c.to_dict() for c in s.courses] for key, s in fake_db.schedules.items()}

        assert lectures_first == lectures_second
        assert schedules_first == schedules_second
        assert len(lectures_second) == 2
        # нечётные недели 1..13 и общие недели 1..3
        assert len(fake_db.schedules_for(group.group_id)) == 7 + 3
        assert report.stored == 10

    async def test_duplicate_entries_in_one_payload(self, config, fake_db):
        await seed_group(fake_db)
        entries = [lecture_entry(roomShortName="C201"), lecture_entry(roomShortName="C305")]
        fetcher = make_fetcher(lectures={"101": [entries, []]})

        report = await SyncPipeline(config, fake_db, fetcher).sync_lectures()

        assert report.stored == 1
        [lecture] = fake_db.lectures.values()
        assert lecture.room == "C305"


class TestStageReport:
    """Тесты сводки по группам."""

    def test_merge_counts_by_status(self):
        report = StageReport("lectures")
        report.merge(GroupResult(status=True, group_id="101", details="", lectures_stored=3, entries_rejected=1))
        report.merge(GroupResult(status=False, group_id="102", details="Group skipped",
                                 errors="fetch_failed: timeout"))

        assert report.processed == 2
        assert report.stored == 3
        assert report.skipped == 1
        assert report.failed_groups == 1
        assert report.failures == ["group 102: fetch_failed: timeout"]


@pytest.mark.asyncio
class TestRunAll:
    """Тесты оркестратора."""

    async def test_all_stages_in_order(self, config, fake_db):
        fetcher = make_fetcher(
            faculties=FACULTIES,
            groups=[group_record()],
            teachers=[{"id": "300", "lastName": "Popescu", "firstName": "Ion Mihai"}],
            lectures={"101": [[lecture_entry()], []]},
        )

        run = await SyncPipeline(config, fake_db, fetcher).run_all()

        assert [stage.stage for stage in run.stages] == [
            "faculties", "groups", "teachers", "lectures", "schedules"
        ]
        assert run.stage("lectures").stored == 1
        assert run.stage("schedules").stored == 7
        assert run.total_failed_groups == 0
        assert run.total_skipped == 1
        [lecture] = fake_db.lectures.values()
        assert lecture.teacher_id == fake_db.teachers["300"].teacher_id

    async def test_first_failing_stage_aborts(self, config, fake_db):
        fetcher = make_fetcher(faculties=FACULTIES)
        fetcher.fetch_groups.side_effect = PayloadError("HTTP 403")

        with pytest.raises(FatalError) as exc_info:
            await SyncPipeline(config, fake_db, fetcher).run_all()

        assert exc_info.value.stage == "groups"
        assert isinstance(exc_info.value.cause, PayloadError)
        assert set(fake_db.faculties) == {"1", "2"}
        fetcher.fetch_teachers.assert_not_awaited()

    async def test_store_failure_is_fatal(self, config, fake_db):
        await seed_group(fake_db)

        async def broken_upsert(lectures):
            raise ConnectionError("connection to store lost")

        fake_db.upsert_lectures = broken_upsert
        pipeline = SyncPipeline(config, fake_db, make_fetcher(lectures={"101": [[lecture_entry()], []]}))

        with pytest.raises(FatalError) as exc_info:
            await pipeline.run_stage("lectures", pipeline.sync_lectures)

        assert exc_info.value.stage == "lectures"
        assert isinstance(exc_info.value.cause, ConnectionError)
