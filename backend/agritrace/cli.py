"""Management CLI for the traceability database.

Usage:
    python -m agritrace.cli init-db            # Create missing tables
    python -m agritrace.cli cleanup --days 365 # Purge old completed records
    python -m agritrace.cli stats              # Record counts per stage / quality
"""

import asyncio
import sys

from agritrace.config import settings
from agritrace.database import async_session, create_all
from agritrace.services.analytics import get_quality_statistics, get_stage_statistics
from agritrace.services.quality import count_quality_issues, count_stages_with_losses
from agritrace.services.scheduler import run_retention_cleanup


def init_db():
    asyncio.run(create_all())
    print("Tables created.")


def cleanup(args: list[str]):
    days = settings.retention_days
    if "--days" in args:
        idx = args.index("--days")
        try:
            days = int(args[idx + 1])
        except (IndexError, ValueError):
            print("Usage: cleanup --days N")
            sys.exit(2)
    deleted = asyncio.run(run_retention_cleanup(days))
    print(f"Deleted {deleted} completed record(s) older than {days} day(s).")


async def _collect_stats():
    async with async_session() as db:
        return (
            await get_stage_statistics(db),
            await get_quality_statistics(db),
            await count_quality_issues(db),
            await count_stages_with_losses(db),
        )


def stats():
    by_stage, by_quality, issues, lossy = asyncio.run(_collect_stats())
    print("Records per stage:")
    for stage, count in by_stage.items():
        print(f"  {stage:<14} {count}")
    print("Records per quality status:")
    for status, count in by_quality.items():
        print(f"  {status:<14} {count}")
    print(f"\n{issues} quality issue(s), {lossy} stage(s) with losses")


def main():
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    if cmd == "init-db":
        init_db()
    elif cmd == "cleanup":
        cleanup(sys.argv[2:])
    elif cmd == "stats":
        stats()
    else:
        print(__doc__)


if __name__ == "__main__":
    main()
