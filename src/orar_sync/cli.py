"""
Командная строка orar-sync.

    orar-sync all --full-refresh
    orar-sync lectures --group 1234 --group 1235
    orar-sync schedules
    orar-sync clear-lectures
"""

import argparse
import asyncio
import sys
from typing import Optional, Sequence

import asyncpg
import structlog

from .config import get_config
from .db import Database
from .errors import ConfigError, FatalError
from .fetcher import SourceFetcher
from .models import RunReport, StageReport
from .pipeline import SyncPipeline
from .utils import configure_logging

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orar-sync",
        description="Sync university timetables into the local store."
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("faculties", help="Sync the faculty list")
    commands.add_parser("groups", help="Sync student groups")
    commands.add_parser("teachers", help="Sync the teacher directory")

    lectures = commands.add_parser("lectures", help="Sync lectures of groups")
    lectures.add_argument("--group", dest="groups", action="append", metavar="ID",
                          help="External group id (repeatable); all groups by default")
    lectures.add_argument("--full-refresh", action="store_true",
                          help="Replace the lectures of every group that syncs")

    schedules = commands.add_parser("schedules", help="Rebuild weekly schedules from stored lectures")
    schedules.add_argument("--group", dest="groups", action="append", metavar="ID",
                           help="External group id (repeatable); all groups by default")

    run_all = commands.add_parser("all", help="Run every stage in order")
    run_all.add_argument("--full-refresh", action="store_true",
                         help="Replace the lectures of every group that syncs")

    commands.add_parser("clear-lectures", help="Delete every stored lecture")

    return parser


def print_report(report: StageReport) -> None:
    print(
        f"[{report.stage}] processed={report.processed} stored={report.stored} "
        f"skipped={report.skipped} failed_groups={report.failed_groups} "
        f"({report.duration:.1f}s)"
    )
    for reason, count in report.reasons.most_common():
        print(f"    {reason.value}: {count}")


async def run(args: argparse.Namespace) -> RunReport:
    """Выполнить выбранную команду и вернуть отчёт."""
    config = get_config()

    async with Database(config.database_url) as db:
        await db.init_schema()
        async with SourceFetcher(config) as fetcher:
            pipeline = SyncPipeline(config, db, fetcher)

            match args.command:
                case "all":
                    return await pipeline.run_all(full_refresh=args.full_refresh)
                case "faculties":
                    stage = pipeline.sync_faculties
                case "groups":
                    stage = pipeline.sync_groups
                case "teachers":
                    stage = pipeline.sync_teachers
                case "lectures":
                    stage = lambda: pipeline.sync_lectures(args.groups, full_refresh=args.full_refresh)
                case "schedules":
                    stage = lambda: pipeline.generate_schedules(args.groups)
                case "clear-lectures":
                    stage = pipeline.clear_lectures
                case _:
                    raise ValueError(f"Unknown command {args.command!r}")

            return RunReport(stages=[await pipeline.run_stage(args.command, stage)])


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = get_config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    configure_logging(config.log_level)

    try:
        report = asyncio.run(run(args))
    except FatalError as e:
        logger.error("run_aborted", stage=e.stage, error=str(e))
        print(f"Aborted: {e}", file=sys.stderr)
        return 1
    except (OSError, asyncpg.PostgresError) as e:
        # Хранилище недоступно ещё до первого этапа
        logger.error("database_unavailable", error=str(e))
        print(f"Database unavailable: {e}", file=sys.stderr)
        return 1

    for stage_report in report.stages:
        print_report(stage_report)
    return 0


if __name__ == "__main__":
    sys.exit(main())
