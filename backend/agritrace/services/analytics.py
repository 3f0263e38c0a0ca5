"""Traceability analytics: batch summaries, metrics and fleet statistics.

Everything here is read-only.  Per-batch analytics load the batch's records
once (in pipeline order) and aggregate in Python; fleet statistics are a
single grouped scan each.

Empty or single-record batches produce zeroed / partial results rather than
errors.  Only the performance analysis declines explicitly, with
``insufficient_data = True``, when a batch has no records.
"""

import logging
from collections import Counter, defaultdict
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agritrace.config import settings
from agritrace.models.stage_record import CENT, Stage, StageRecord, percent
from agritrace.schemas.analytics import (
    ChainSummary,
    PerformanceAnalysis,
    ProductionMetrics,
    StageDurationEntry,
    StageDurationStats,
    StageLossEntry,
    StageTimelineEntry,
    TrackingInfo,
)
from agritrace.services.stage_store import get_by_tracking_code, list_batch_stages

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _hours(seconds: float) -> float:
    return round(seconds / 3600, 2)


def timeline_entry(record: StageRecord) -> StageTimelineEntry:
    return StageTimelineEntry(
        id=record.id,
        stage=record.stage,
        stage_order=record.stage_order,
        status="complete" if record.is_complete else "open",
        tracking_code=record.tracking_code,
        location=record.location,
        facility_name=record.facility_name,
        responsible_party=record.responsible_party,
        quality_status=record.quality_status,
        quantity_in=record.quantity_in,
        quantity_out=record.quantity_out,
        loss_quantity=record.loss_quantity or ZERO,
        loss_percentage=record.loss_percentage,
        cost=record.cost,
        stage_start_date=record.stage_start_date,
        stage_end_date=record.stage_end_date,
        duration_hours=record.duration_hours,
    )


def _current_record(records: list[StageRecord]) -> StageRecord:
    """Furthest open record, else the most recently completed one."""
    open_records = [r for r in records if not r.is_complete]
    if open_records:
        return max(open_records, key=lambda r: (r.stage_order, r.stage_start_date))
    return max(records, key=lambda r: (r.stage_end_date, r.stage_order))


def _furthest_completed(records: list[StageRecord]) -> StageRecord | None:
    completed = [r for r in records if r.is_complete]
    if not completed:
        return None
    return max(completed, key=lambda r: (r.stage_order, r.stage_end_date))


# ── Per-batch ────────────────────────────────────────────────

async def get_supply_chain_summary(db: AsyncSession, batch_id: str) -> ChainSummary:
    records = await list_batch_stages(db, batch_id)
    if not records:
        return ChainSummary(batch_id=batch_id)

    completed = [r for r in records if r.is_complete]
    total_in = records[0].quantity_in
    total_loss = sum((r.loss_quantity or ZERO for r in records), ZERO)
    furthest = _furthest_completed(records)
    current = _current_record(records)

    return ChainSummary(
        batch_id=batch_id,
        total_stages=len(records),
        completed_stages=len(completed),
        incomplete_stages=len(records) - len(completed),
        total_quantity_in=total_in,
        total_quantity_out=furthest.quantity_out if furthest else ZERO,
        total_loss=total_loss,
        cumulative_loss_percentage=percent(total_loss, total_in) or ZERO,
        total_cost=sum((r.cost or ZERO for r in records), ZERO),
        quality_issue_count=sum(1 for r in records if r.has_quality_issues),
        current_stage=current.stage,
        current_stage_id=current.id,
        is_complete=any(r.stage.is_terminal and r.is_complete for r in records),
        stage_distribution=dict(Counter(r.stage.value for r in records)),
        stages=[timeline_entry(r) for r in records],
    )


async def get_crop_production_metrics(db: AsyncSession, batch_id: str) -> ProductionMetrics:
    records = await list_batch_stages(db, batch_id)
    if not records:
        return ProductionMetrics(batch_id=batch_id, status="no data")

    initial = records[0].quantity_in
    furthest = _furthest_completed(records)
    total_loss = sum((r.loss_quantity or ZERO for r in records), ZERO)
    total_cost = sum((r.cost or ZERO for r in records), ZERO)
    in_progress = any(not r.is_complete for r in records)

    first_start = min(r.stage_start_date for r in records)
    ends = [r.stage_end_date for r in records if r.is_complete]
    last_end = max(ends) if ends else None
    elapsed = None
    if not in_progress and last_end is not None:
        elapsed = _hours((last_end - first_start).total_seconds())

    return ProductionMetrics(
        batch_id=batch_id,
        status="in progress" if in_progress else "complete",
        total_stages=len(records),
        completed_stages=len(ends),
        stages_with_losses=sum(1 for r in records if r.has_losses),
        stages_with_quality_issues=sum(1 for r in records if r.has_quality_issues),
        initial_quantity=initial,
        final_quantity=furthest.quantity_out if furthest else ZERO,
        total_loss=total_loss,
        overall_loss_percentage=percent(total_loss, initial) or ZERO,
        total_cost=total_cost,
        average_cost_per_stage=_quantize(total_cost / len(records)),
        cost_per_unit=_quantize(total_cost / initial) if initial else None,
        first_stage_start=first_start,
        last_stage_end=last_end,
        in_progress=in_progress,
        total_elapsed_hours=elapsed,
    )


async def get_performance_analysis(db: AsyncSession, batch_id: str) -> PerformanceAnalysis:
    threshold = settings.loss_alert_threshold_pct
    records = await list_batch_stages(db, batch_id)
    if not records:
        return PerformanceAnalysis(
            batch_id=batch_id, insufficient_data=True, alert_threshold_pct=threshold
        )

    loss_entries = [
        StageLossEntry(
            id=r.id,
            stage=r.stage,
            loss_quantity=r.loss_quantity or ZERO,
            loss_percentage=r.loss_percentage,
        )
        for r in records
        if r.loss_percentage is not None
    ]
    lossy = [e for e in loss_entries if e.loss_quantity > 0]
    bottleneck = max(lossy, key=lambda e: e.loss_percentage) if lossy else None

    completed = [r for r in records if r.is_complete]
    longest = None
    if completed:
        slowest = max(completed, key=lambda r: r.duration)
        longest = StageDurationEntry(
            id=slowest.id, stage=slowest.stage, duration_hours=slowest.duration_hours
        )

    limit = Decimal(str(threshold))
    alerts = [e for e in loss_entries if e.loss_percentage > limit]
    for alert in alerts:
        logger.warning(
            "Batch %s: %s stage %s lost %s%% (threshold %s%%)",
            batch_id, alert.stage.value, alert.id, alert.loss_percentage, threshold,
        )

    efficiencies = [r.efficiency_rate for r in completed if r.efficiency_rate is not None]

    loss_by_stage: dict[str, Decimal] = defaultdict(lambda: ZERO)
    cost_by_stage: dict[str, Decimal] = defaultdict(lambda: ZERO)
    duration_by_stage: dict[str, float] = defaultdict(float)
    for r in records:
        loss_by_stage[r.stage.value] += r.loss_quantity or ZERO
        cost_by_stage[r.stage.value] += r.cost or ZERO
        if r.is_complete:
            duration_by_stage[r.stage.value] = round(
                duration_by_stage[r.stage.value] + r.duration_hours, 2
            )

    return PerformanceAnalysis(
        batch_id=batch_id,
        alert_threshold_pct=threshold,
        bottleneck=bottleneck,
        longest_stage=longest,
        loss_alerts=alerts,
        average_efficiency=(
            _quantize(sum(efficiencies, ZERO) / len(efficiencies)) if efficiencies else None
        ),
        min_efficiency=min(efficiencies) if efficiencies else None,
        max_efficiency=max(efficiencies) if efficiencies else None,
        loss_by_stage=dict(loss_by_stage),
        cost_by_stage=dict(cost_by_stage),
        duration_by_stage=dict(duration_by_stage),
        quality_distribution=dict(Counter(r.quality_status.value for r in records)),
    )


async def get_tracking_info(db: AsyncSession, tracking_code: str) -> TrackingInfo:
    """Look up one record by tracking code and place it in its batch journey."""
    record = await get_by_tracking_code(db, tracking_code)
    journey = await list_batch_stages(db, record.batch_id)
    completed = sum(1 for r in journey if r.is_complete)
    progress = round(completed * 100 / len(journey), 1)

    next_stage = None
    if record.is_complete and not record.stage.is_terminal:
        next_stage = record.stage.next_stage

    return TrackingInfo(
        tracking_code=tracking_code,
        batch_id=record.batch_id,
        current=timeline_entry(record),
        journey=[timeline_entry(r) for r in journey],
        total_stages=len(journey),
        completed_stages=completed,
        progress_percentage=progress,
        next_stage=next_stage,
    )


# ── Fleet-wide ───────────────────────────────────────────────

async def get_stage_statistics(db: AsyncSession) -> dict[str, int]:
    """Record count per stage, in pipeline order."""
    rows = (
        await db.execute(
            select(StageRecord.stage, func.count(StageRecord.id)).group_by(StageRecord.stage)
        )
    ).all()
    return {stage.value: count for stage, count in sorted(rows, key=lambda row: row[0].order)}


async def get_quality_statistics(db: AsyncSession) -> dict[str, int]:
    rows = (
        await db.execute(
            select(StageRecord.quality_status, func.count(StageRecord.id))
            .group_by(StageRecord.quality_status)
        )
    ).all()
    return {status.value: count for status, count in rows}


async def get_stage_duration_statistics(db: AsyncSession) -> dict[str, StageDurationStats]:
    """Average / min / max duration per stage over completed records."""
    rows = (
        await db.execute(
            select(
                StageRecord.stage,
                StageRecord.stage_start_date,
                StageRecord.stage_end_date,
            ).where(StageRecord.stage_end_date.is_not(None))
        )
    ).all()

    hours: dict[Stage, list[float]] = defaultdict(list)
    for stage, start, end in rows:
        hours[stage].append((end - start).total_seconds() / 3600)

    return {
        stage.value: StageDurationStats(
            completed=len(values),
            average_hours=round(sum(values) / len(values), 2),
            min_hours=round(min(values), 2),
            max_hours=round(max(values), 2),
        )
        for stage, values in sorted(hours.items(), key=lambda item: item[0].order)
    }
