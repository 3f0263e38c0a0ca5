"""Stage record router.

Endpoints:
    POST   /api/stages/                        Report a stage record
    GET    /api/stages/                        List with filters (paginated)
    GET    /api/stages/search?q=               Free-text search (paginated)
    GET    /api/stages/incomplete              Open records
    GET    /api/stages/completed               Completed records
    GET    /api/stages/active?at=              Records active at a moment
    GET    /api/stages/quality-issues          FLAGGED / REJECTED records
    GET    /api/stages/losses                  Records with a loss
    GET    /api/stages/high-losses?threshold=  Loss ≥ threshold % of input
    GET    /api/stages/tracking/{code}         Lookup by tracking code
    GET    /api/stages/tracking/{code}/journey Record placed in its batch journey
    GET    /api/stages/transactions/{txn}      Lookup by transaction id
    POST   /api/stages/bulk                    Create many (all-or-nothing)
    PATCH  /api/stages/bulk                    Update many (all-or-nothing)
    POST   /api/stages/bulk/delete             Delete many (all-or-nothing)
    POST   /api/stages/cleanup?days_old=       Retention cleanup
    GET    /api/stages/{stage_id}              Detail (with locked fields)
    PATCH  /api/stages/{stage_id}              Partial update
    PUT    /api/stages/{stage_id}              Full update of mutable fields
    DELETE /api/stages/{stage_id}              Delete one record
    POST   /api/stages/{stage_id}/complete     Close an open stage
    PATCH  /api/stages/{stage_id}/quality      Update quality status
    PATCH  /api/stages/{stage_id}/loss         Update loss quantity / reason
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status as http_status
from sqlalchemy.ext.asyncio import AsyncSession

from agritrace.database import get_db
from agritrace.schemas.analytics import TrackingInfo
from agritrace.schemas.common import PaginatedResponse
from agritrace.schemas.stage import (
    BulkDeleteRequest,
    BulkStageUpdateItem,
    CleanupResult,
    CompletionRequest,
    LossUpdateRequest,
    QualityUpdateRequest,
    StageFilter,
    StageRecordCreate,
    StageRecordDetail,
    StageRecordOut,
    StageRecordReplace,
    StageRecordUpdate,
)
from agritrace.services import quality, stage_store, transitions
from agritrace.services.analytics import get_tracking_info
from agritrace.utils.cache import invalidate_cache
from agritrace.utils.locks import get_stage_locks

router = APIRouter()


async def _written():
    await invalidate_cache("stats:*")


# ── POST /api/stages/ ────────────────────────────────────────

@router.post("/", response_model=StageRecordOut, status_code=201)
async def create_stage(
    body: StageRecordCreate,
    db: AsyncSession = Depends(get_db),
):
    record = await stage_store.create_stage(db, body)
    await _written()
    return record


# ── GET /api/stages/ ─────────────────────────────────────────

@router.get("/", response_model=PaginatedResponse[StageRecordOut])
async def list_stages(
    filters: StageFilter = Depends(),
    db: AsyncSession = Depends(get_db),
):
    items, total = await stage_store.find_with_filters(db, filters)
    return PaginatedResponse[StageRecordOut](
        items=[StageRecordOut.model_validate(r) for r in items],
        total=total,
        limit=filters.limit,
        offset=filters.offset,
    )


@router.get("/search", response_model=PaginatedResponse[StageRecordOut])
async def search_stages(
    q: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    items, total = await stage_store.search_stages(db, q, limit=limit, offset=offset)
    return PaginatedResponse[StageRecordOut](
        items=[StageRecordOut.model_validate(r) for r in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/incomplete", response_model=list[StageRecordOut])
async def list_incomplete(
    batch_id: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await stage_store.find_incomplete(db, batch_id)


@router.get("/completed", response_model=list[StageRecordOut])
async def list_completed(
    batch_id: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await stage_store.find_completed(db, batch_id)


@router.get("/active", response_model=list[StageRecordOut])
async def list_active_at(
    at: datetime = Query(...),
    db: AsyncSession = Depends(get_db),
):
    return await stage_store.find_active_at(db, at)


@router.get("/quality-issues", response_model=list[StageRecordOut])
async def list_quality_issues(
    batch_id: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await quality.find_quality_issues(db, batch_id)


@router.get("/losses", response_model=list[StageRecordOut])
async def list_losses(
    batch_id: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await quality.find_stages_with_losses(db, batch_id)


@router.get("/high-losses", response_model=list[StageRecordOut])
async def list_high_losses(
    threshold: float = Query(5.0, ge=0, le=100),
    batch_id: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    return await quality.find_stages_with_high_losses(db, threshold, batch_id)


@router.get("/tracking/{tracking_code}", response_model=StageRecordOut)
async def get_by_tracking_code(
    tracking_code: str,
    db: AsyncSession = Depends(get_db),
):
    return await stage_store.get_by_tracking_code(db, tracking_code)


@router.get("/tracking/{tracking_code}/journey", response_model=TrackingInfo)
async def get_tracking_journey(
    tracking_code: str,
    db: AsyncSession = Depends(get_db),
):
    return await get_tracking_info(db, tracking_code)


@router.get("/transactions/{transaction_id}", response_model=StageRecordOut)
async def get_by_transaction_id(
    transaction_id: str,
    db: AsyncSession = Depends(get_db),
):
    return await stage_store.get_by_transaction_id(db, transaction_id)


# ── Bulk ─────────────────────────────────────────────────────

@router.post("/bulk", response_model=list[StageRecordOut], status_code=201)
async def bulk_create(
    body: list[StageRecordCreate],
    db: AsyncSession = Depends(get_db),
):
    records = await stage_store.create_stages(db, body)
    await _written()
    return records


@router.patch("/bulk", response_model=list[StageRecordOut])
async def bulk_update(
    body: list[BulkStageUpdateItem],
    db: AsyncSession = Depends(get_db),
):
    updates = [
        (item.id, item.model_dump(exclude_unset=True, exclude={"id"}))
        for item in body
    ]
    records = await stage_store.update_stages(db, updates)
    await _written()
    return records


@router.post("/bulk/delete")
async def bulk_delete(
    body: BulkDeleteRequest,
    db: AsyncSession = Depends(get_db),
):
    deleted = await stage_store.delete_stages(db, body.ids)
    await _written()
    return {"deleted": deleted}


@router.post("/cleanup", response_model=CleanupResult)
async def cleanup(
    days_old: int = Query(..., ge=0),
    db: AsyncSession = Depends(get_db),
):
    deleted, cutoff = await stage_store.cleanup_old_completed(db, days_old)
    await _written()
    return CleanupResult(deleted=deleted, cutoff=cutoff)


# ── Single record ────────────────────────────────────────────

@router.get("/{stage_id}", response_model=StageRecordDetail)
async def get_stage(
    stage_id: str,
    db: AsyncSession = Depends(get_db),
):
    record = await stage_store.get_stage(db, stage_id)
    detail = StageRecordDetail.model_validate(record)
    lock_info = await get_stage_locks(db, record)
    detail.locked_fields = lock_info.locked_field_names()
    return detail


@router.patch("/{stage_id}", response_model=StageRecordOut)
async def update_stage(
    stage_id: str,
    body: StageRecordUpdate,
    db: AsyncSession = Depends(get_db),
):
    record = await stage_store.update_stage(
        db, stage_id, body.model_dump(exclude_unset=True)
    )
    await _written()
    return record


@router.put("/{stage_id}", response_model=StageRecordOut)
async def replace_stage(
    stage_id: str,
    body: StageRecordReplace,
    db: AsyncSession = Depends(get_db),
):
    record = await stage_store.update_stage(db, stage_id, body.model_dump())
    await _written()
    return record


@router.delete("/{stage_id}", status_code=http_status.HTTP_204_NO_CONTENT)
async def delete_stage(
    stage_id: str,
    db: AsyncSession = Depends(get_db),
):
    await stage_store.delete_stage(db, stage_id)
    await _written()


@router.post("/{stage_id}/complete", response_model=StageRecordOut)
async def complete_stage(
    stage_id: str,
    body: CompletionRequest,
    db: AsyncSession = Depends(get_db),
):
    record = await transitions.complete_stage(db, stage_id, body)
    await _written()
    return record


@router.patch("/{stage_id}/quality", response_model=StageRecordOut)
async def update_quality(
    stage_id: str,
    body: QualityUpdateRequest,
    db: AsyncSession = Depends(get_db),
):
    record = await quality.update_quality_status(db, stage_id, body)
    await _written()
    return record


@router.patch("/{stage_id}/loss", response_model=StageRecordOut)
async def update_loss(
    stage_id: str,
    body: LossUpdateRequest,
    db: AsyncSession = Depends(get_db),
):
    record = await quality.update_loss_information(db, stage_id, body)
    await _written()
    return record
