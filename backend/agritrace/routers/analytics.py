"""Fleet-wide statistics router (cached in Redis, invalidated on writes).

Endpoints:
    GET /api/analytics/stages     Record count per stage
    GET /api/analytics/quality    Record count per quality status
    GET /api/analytics/durations  Duration stats per stage (completed records)
    GET /api/analytics/losses     Loss totals and top contributors
    GET /api/analytics/counts     Headline counters
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from agritrace.database import get_db
from agritrace.schemas.analytics import LossStatistics, StageDurationStats
from agritrace.services import analytics, quality, stage_store
from agritrace.utils.cache import cached

router = APIRouter()


@router.get("/stages", response_model=dict[str, int])
@cached(prefix="stats")
async def stage_statistics(db: AsyncSession = Depends(get_db)):
    return await analytics.get_stage_statistics(db)


@router.get("/quality", response_model=dict[str, int])
@cached(prefix="stats")
async def quality_statistics(db: AsyncSession = Depends(get_db)):
    return await analytics.get_quality_statistics(db)


@router.get("/durations", response_model=dict[str, StageDurationStats])
@cached(prefix="stats")
async def duration_statistics(db: AsyncSession = Depends(get_db)):
    return await analytics.get_stage_duration_statistics(db)


@router.get("/losses", response_model=LossStatistics)
@cached(prefix="stats")
async def loss_statistics(
    limit: int = Query(5, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    return await quality.get_loss_statistics(db, limit=limit)


@router.get("/counts")
@cached(prefix="stats")
async def counts(db: AsyncSession = Depends(get_db)):
    return {
        "total": await stage_store.count_stages(db),
        "quality_issues": await quality.count_quality_issues(db),
        "stages_with_losses": await quality.count_stages_with_losses(db),
    }
