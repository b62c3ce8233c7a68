import argparse
import asyncio

from orar_sync.config import get_config
from orar_sync.db import get_database
from orar_sync.fetcher import SourceFetcher
from orar_sync.normalizer import OccurrenceNormalizer
from orar_sync.pipeline import SyncPipeline
from orar_sync.resolver import IdentifierResolver
from orar_sync.utils import configure_logging


async def main(group_id: str) -> None:
    config = get_config()
    configure_logging(config.log_level)

    db = await get_database()
    try:
        async with SourceFetcher(config) as fetcher:
            pipeline = SyncPipeline(config, db, fetcher)
            resolver = await IdentifierResolver.load(db, config.faculty_map)
            normalizer = OccurrenceNormalizer(config.semester_start, config.semester_weeks)

            result = await pipeline.sync_group_lectures(group_id, resolver, normalizer)
            status = "SUCCESS" if result.status else "FAILURE"

            print(f"[{status}] Group {result.group_id}: {result.details}")
            if result.status:
                print(f"Stored: {result.lectures_stored}, Rejected: {result.entries_rejected}")
                report = await pipeline.generate_schedules([group_id])
                print(f"Schedules: {report.stored}")
            elif result.errors:
                print(f"Error: {result.errors}")

            for reason, count in result.reasons.most_common():
                print(f"    {reason.value}: {count}")
    finally:
        await db.disconnect()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Sync lectures and schedules of a single group.")
    parser.add_argument("group_id", help="External group identifier")
    args = parser.parse_args()

    asyncio.run(main(args.group_id))
