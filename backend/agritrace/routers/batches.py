"""Batch router: a batch's journey through the pipeline.

Endpoints:
    GET  /api/batches/{batch_id}/stages       Records in pipeline order
    POST /api/batches/{batch_id}/start        Open the harvest stage
    POST /api/batches/{batch_id}/next-stage   Open the successor stage
    GET  /api/batches/{batch_id}/summary      Chain summary
    GET  /api/batches/{batch_id}/metrics      Production metrics
    GET  /api/batches/{batch_id}/performance  Bottleneck / loss alerts
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from agritrace.database import get_db
from agritrace.schemas.analytics import ChainSummary, PerformanceAnalysis, ProductionMetrics
from agritrace.schemas.stage import HarvestRequest, NextStageRequest, StageRecordOut
from agritrace.services import analytics, stage_store, transitions
from agritrace.utils.cache import invalidate_cache

router = APIRouter()


@router.get("/{batch_id}/stages", response_model=list[StageRecordOut])
async def list_batch_stages(
    batch_id: str,
    db: AsyncSession = Depends(get_db),
):
    return await stage_store.list_batch_stages(db, batch_id)


@router.post("/{batch_id}/start", response_model=StageRecordOut, status_code=201)
async def start_batch(
    batch_id: str,
    body: HarvestRequest,
    db: AsyncSession = Depends(get_db),
):
    record = await transitions.start_batch(db, batch_id, body)
    await invalidate_cache("stats:*")
    return record


@router.post("/{batch_id}/next-stage", response_model=StageRecordOut, status_code=201)
async def create_next_stage(
    batch_id: str,
    body: NextStageRequest,
    db: AsyncSession = Depends(get_db),
):
    record = await transitions.create_next_stage(db, batch_id, body)
    await invalidate_cache("stats:*")
    return record


@router.get("/{batch_id}/summary", response_model=ChainSummary)
async def get_summary(
    batch_id: str,
    db: AsyncSession = Depends(get_db),
):
    return await analytics.get_supply_chain_summary(db, batch_id)


@router.get("/{batch_id}/metrics", response_model=ProductionMetrics)
async def get_metrics(
    batch_id: str,
    db: AsyncSession = Depends(get_db),
):
    return await analytics.get_crop_production_metrics(db, batch_id)


@router.get("/{batch_id}/performance", response_model=PerformanceAnalysis)
async def get_performance(
    batch_id: str,
    db: AsyncSession = Depends(get_db),
):
    return await analytics.get_performance_analysis(db, batch_id)
