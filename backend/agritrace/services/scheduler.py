"""Background retention task: purges old completed stage records once a day.

Uses FastAPI's lifespan context to start/stop an asyncio background loop:
a plain asyncio.sleep loop that fires once per day at the configured hour.
The loop only starts when retention is enabled; open records are never
touched, however old.

Configuration (via .env):
    RETENTION_CLEANUP_ENABLED=true
    RETENTION_DAYS=365    (delete completed records created before now - 365d)
    RETENTION_HOUR=3      (run at 03:00 UTC daily)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI

from agritrace.config import settings
from agritrace.database import async_session
from agritrace.services.stage_store import cleanup_old_completed
from agritrace.utils.cache import close_redis, invalidate_cache

logger = logging.getLogger("agritrace.scheduler")


async def run_retention_cleanup(days_old: int | None = None) -> int:
    """Delete completed records past the retention window in one transaction."""
    days = settings.retention_days if days_old is None else days_old
    logger.info("Starting retention cleanup (older than %d days)", days)

    async with async_session() as db:
        try:
            deleted, cutoff = await cleanup_old_completed(db, days)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    if deleted:
        await invalidate_cache("stats:*")
    logger.info("Retention cleanup removed %d record(s) created before %s", deleted, cutoff)
    return deleted


def seconds_until(hour: int, now: datetime | None = None) -> float:
    """Seconds from ``now`` until the next ``hour``:00 UTC."""
    now = now or datetime.now(timezone.utc)
    next_run = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def _scheduler_loop() -> None:
    while True:
        wait_seconds = seconds_until(settings.retention_hour)
        logger.info("Next retention cleanup in %.0f seconds", wait_seconds)
        await asyncio.sleep(wait_seconds)

        try:
            await run_retention_cleanup()
        except Exception:
            logger.exception("Unhandled error in retention cleanup")

        # Small buffer to avoid running twice in the same minute
        await asyncio.sleep(60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the retention loop (when enabled); release Redis on shutdown."""
    task = None
    if settings.retention_cleanup_enabled:
        task = asyncio.create_task(_scheduler_loop())
        logger.info("Retention scheduler started")
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Retention scheduler stopped")
        await close_redis()
