"""Quality and loss tracking for stage records.

Quality status is orthogonal to quantities, so a quality update never
re-checks conservation.  A loss update does whenever it carries a
loss_quantity, against the stored quantity_in / quantity_out.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agritrace.middleware.exceptions import ValidationError
from agritrace.models.stage_record import (
    CENT,
    QUALITY_ISSUE_STATUSES,
    StageRecord,
    utcnow,
)
from agritrace.schemas.analytics import LossContributor, LossStatistics
from agritrace.schemas.stage import LossUpdateRequest, QualityUpdateRequest
from agritrace.services import conservation
from agritrace.services.stage_store import get_stage

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


# ── Updates ──────────────────────────────────────────────────

async def update_quality_status(
    db: AsyncSession, stage_id: str, body: QualityUpdateRequest
) -> StageRecord:
    record = await get_stage(db, stage_id, for_update=True)
    previous = record.quality_status
    record.quality_status = body.quality_status
    if body.quality_tests is not None:
        record.quality_tests = body.quality_tests
    # Refreshed even when the status is unchanged
    record.updated_at = utcnow()
    await db.flush()

    if body.quality_status.is_issue:
        logger.warning(
            "Quality issue on %s stage %s of batch %s: %s → %s",
            record.stage.value, record.id, record.batch_id,
            previous.value if previous else None, body.quality_status.value,
        )
    return record


async def update_loss_information(
    db: AsyncSession, stage_id: str, body: LossUpdateRequest
) -> StageRecord:
    """Record a loss quantity and/or its reason on one stage.

    Raises:
        NotFoundError: unknown stage id.
        ConservationError: the new loss no longer fits within quantity_in.
    """
    record = await get_stage(db, stage_id, for_update=True)
    if body.loss_quantity is not None:
        conservation.validate(record.quantity_in, record.quantity_out, body.loss_quantity)
        record.loss_quantity = body.loss_quantity
    if body.loss_reason is not None:
        record.loss_reason = body.loss_reason
    await db.flush()
    logger.info(
        "Loss updated on stage %s: %s (%s)",
        record.id, record.loss_quantity, record.loss_reason or "no reason",
    )
    return record


# ── Queries ──────────────────────────────────────────────────

def _scoped(stmt, batch_id: str | None):
    if batch_id:
        stmt = stmt.where(StageRecord.batch_id == batch_id)
    return stmt


async def find_quality_issues(
    db: AsyncSession, batch_id: str | None = None
) -> list[StageRecord]:
    stmt = _scoped(
        select(StageRecord).where(StageRecord.quality_status.in_(QUALITY_ISSUE_STATUSES)),
        batch_id,
    ).order_by(StageRecord.batch_id, StageRecord.stage_order)
    return list((await db.execute(stmt)).scalars().all())


async def find_stages_with_losses(
    db: AsyncSession, batch_id: str | None = None
) -> list[StageRecord]:
    stmt = _scoped(
        select(StageRecord).where(StageRecord.loss_quantity > 0), batch_id
    ).order_by(StageRecord.loss_quantity.desc(), StageRecord.id)
    return list((await db.execute(stmt)).scalars().all())


async def find_stages_with_high_losses(
    db: AsyncSession, threshold_percent: float | Decimal, batch_id: str | None = None
) -> list[StageRecord]:
    """Records whose loss is at least ``threshold_percent`` of quantity_in.

    Compared as ``loss × 100 ≥ in × threshold`` so no division happens in
    SQL; records with a zero quantity_in are never included.
    """
    threshold = Decimal(str(threshold_percent))
    if threshold < 0 or threshold > 100:
        raise ValidationError(
            f"Loss threshold must be between 0 and 100 percent ({threshold})"
        )
    stmt = _scoped(
        select(StageRecord).where(
            StageRecord.quantity_in > 0,
            StageRecord.loss_quantity * 100 >= StageRecord.quantity_in * threshold,
        ),
        batch_id,
    )
    records = list((await db.execute(stmt)).scalars().all())
    records.sort(key=lambda r: (r.loss_percentage or ZERO), reverse=True)
    return records


async def count_quality_issues(db: AsyncSession) -> int:
    return await db.scalar(
        select(func.count(StageRecord.id)).where(
            StageRecord.quality_status.in_(QUALITY_ISSUE_STATUSES)
        )
    ) or 0


async def count_stages_with_losses(db: AsyncSession) -> int:
    return await db.scalar(
        select(func.count(StageRecord.id)).where(StageRecord.loss_quantity > 0)
    ) or 0


async def get_loss_statistics(db: AsyncSession, limit: int = 5) -> LossStatistics:
    """Fleet-wide loss aggregation with the largest individual contributors."""
    by_stage = (
        await db.execute(
            select(StageRecord.stage, func.coalesce(func.sum(StageRecord.loss_quantity), 0))
            .where(StageRecord.loss_quantity > 0)
            .group_by(StageRecord.stage)
        )
    ).all()
    loss_by_stage = {
        stage.value: Decimal(str(total))
        for stage, total in sorted(by_stage, key=lambda row: row[0].order)
    }

    lossy = await find_stages_with_losses(db)
    if not lossy:
        return LossStatistics()

    percentages = [r.loss_percentage for r in lossy if r.loss_percentage is not None]
    average = ZERO
    if percentages:
        average = (sum(percentages, ZERO) / len(percentages)).quantize(
            CENT, rounding=ROUND_HALF_UP
        )
    top = [
        LossContributor(
            id=r.id,
            batch_id=r.batch_id,
            stage=r.stage,
            loss_quantity=r.loss_quantity,
            loss_percentage=r.loss_percentage,
            loss_reason=r.loss_reason,
        )
        for r in lossy[:limit]
    ]
    return LossStatistics(
        total_loss=sum((r.loss_quantity for r in lossy), ZERO),
        stages_with_losses=len(lossy),
        average_loss_percentage=average,
        loss_by_stage=loss_by_stage,
        top_contributors=top,
    )
