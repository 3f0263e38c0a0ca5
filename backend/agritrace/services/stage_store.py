"""Stage record store: persistence and query contract over ``stage_records``.

Every write goes through the same rule checks before flushing:
  - conservation of the quantity triple (services.conservation)
  - non-blank location / responsible party, start ≤ end, a completed
    stage has a quantity_out
  - unique tracking_code / transaction_id
  - at most one open record per (batch, stage), backed by a partial
    unique index for concurrent writers
  - quantity_in never exceeds the quantity_out of the preceding completed
    stage of the batch
  - quantity_out never drops below the quantity_in of a later stage that
    was already reported

Mutations load their row ``FOR UPDATE`` so concurrent writers to the same
record are serialized.  Callers own the transaction (get_db commits or
rolls back the whole request), which is what makes the bulk operations
all-or-nothing.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agritrace.middleware.exceptions import (
    IllegalStateError,
    NotFoundError,
    ValidationError,
)
from agritrace.models.stage_record import (
    OPEN_STAGE_INDEX,
    Stage,
    StageRecord,
    as_naive_utc,
    utcnow,
)
from agritrace.schemas.stage import StageFilter, StageRecordCreate
from agritrace.services import conservation
from agritrace.utils.locks import get_stage_locks

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = frozenset(
    {"id", "batch_id", "stage", "stage_order", "created_at", "updated_at"}
)
REQUIRED_FIELDS = ("quantity_in", "location", "responsible_party", "stage_start_date")
DATE_FIELDS = ("stage_start_date", "stage_end_date")
# Columns that may be changed but never cleared
NOT_NULL_FIELDS = frozenset(
    {"tracking_code", "unit", "quality_status", "insurance_coverage"}
)


# ── Lookups ──────────────────────────────────────────────────

async def get_stage(
    db: AsyncSession, stage_id: str, *, for_update: bool = False
) -> StageRecord:
    stmt = select(StageRecord).where(StageRecord.id == stage_id)
    if for_update:
        stmt = stmt.with_for_update()
    record = (await db.execute(stmt)).scalar_one_or_none()
    if record is None:
        raise NotFoundError("Stage record", stage_id)
    return record


async def get_by_tracking_code(db: AsyncSession, tracking_code: str) -> StageRecord:
    record = (
        await db.execute(
            select(StageRecord).where(StageRecord.tracking_code == tracking_code)
        )
    ).scalar_one_or_none()
    if record is None:
        raise NotFoundError("Tracking code", tracking_code)
    return record


async def get_by_transaction_id(db: AsyncSession, transaction_id: str) -> StageRecord:
    record = (
        await db.execute(
            select(StageRecord).where(StageRecord.transaction_id == transaction_id)
        )
    ).scalar_one_or_none()
    if record is None:
        raise NotFoundError("Transaction", transaction_id)
    return record


async def list_batch_stages(
    db: AsyncSession, batch_id: str, *, for_update: bool = False
) -> list[StageRecord]:
    """All records of a batch in pipeline order."""
    stmt = (
        select(StageRecord)
        .where(StageRecord.batch_id == batch_id)
        .order_by(
            StageRecord.stage_order.asc(),
            StageRecord.stage_start_date.asc(),
            StageRecord.created_at.asc(),
        )
    )
    if for_update:
        stmt = stmt.with_for_update()
    return list((await db.execute(stmt)).scalars().all())


# ── Rule checks ──────────────────────────────────────────────

def check_record_fields(values: dict) -> None:
    """Field-level rules on the merged (stored + changed) values."""
    for name in REQUIRED_FIELDS:
        if values.get(name) is None:
            raise ValidationError(f"{name} is required")
    for name in ("location", "responsible_party"):
        if not str(values[name]).strip():
            raise ValidationError(f"{name} must not be blank")

    cost = values.get("cost")
    if cost is not None and cost < 0:
        raise ValidationError(f"Cost cannot be negative ({cost:.2f})")

    start, end = values.get("stage_start_date"), values.get("stage_end_date")
    if end is not None:
        if values.get("quantity_out") is None:
            raise ValidationError("A completed stage requires quantity_out")
        if end < start:
            raise ValidationError(
                f"Stage end date ({end.isoformat()}) is before its start date "
                f"({start.isoformat()})"
            )


async def check_unique_identifiers(
    db: AsyncSession,
    tracking_code: str | None,
    transaction_id: str | None,
    exclude_id: str | None = None,
) -> None:
    for column, value, label in (
        (StageRecord.tracking_code, tracking_code, "Tracking code"),
        (StageRecord.transaction_id, transaction_id, "Transaction id"),
    ):
        if not value:
            continue
        stmt = select(StageRecord.id).where(column == value)
        if exclude_id:
            stmt = stmt.where(StageRecord.id != exclude_id)
        if await db.scalar(stmt.limit(1)):
            raise ValidationError(
                f"{label} already in use: {value}", error_code="DUPLICATE_RECORD"
            )


async def _check_single_open(
    db: AsyncSession, batch_id: str, stage: Stage, exclude_id: str | None = None
) -> None:
    stmt = select(StageRecord.id).where(
        StageRecord.batch_id == batch_id,
        StageRecord.stage == stage,
        StageRecord.stage_end_date.is_(None),
    )
    if exclude_id:
        stmt = stmt.where(StageRecord.id != exclude_id)
    existing = await db.scalar(stmt.limit(1))
    if existing:
        raise ValidationError(
            f"Batch {batch_id} already has an open {stage.value} stage ({existing})",
            details={"open_stage_id": existing},
        )


async def find_predecessor(
    db: AsyncSession, batch_id: str, stage_order: int
) -> StageRecord | None:
    """Furthest completed record of the batch strictly upstream of ``stage_order``."""
    return (
        await db.execute(
            select(StageRecord)
            .where(
                StageRecord.batch_id == batch_id,
                StageRecord.stage_order < stage_order,
                StageRecord.stage_end_date.is_not(None),
            )
            .order_by(
                StageRecord.stage_order.desc(),
                StageRecord.stage_end_date.desc(),
            )
            .limit(1)
        )
    ).scalar_one_or_none()


async def _check_upstream_quantity(
    db: AsyncSession, batch_id: str, stage_order: int, quantity_in: Decimal
) -> None:
    predecessor = await find_predecessor(db, batch_id, stage_order)
    if predecessor is None or predecessor.quantity_out is None:
        return
    if quantity_in > predecessor.quantity_out:
        raise ValidationError(
            f"Quantity in ({quantity_in:.2f}) exceeds the quantity forwarded by "
            f"the {predecessor.stage.value} stage ({predecessor.quantity_out:.2f})",
            details={
                "predecessor_id": predecessor.id,
                "available": str(predecessor.quantity_out),
            },
        )


async def check_downstream_quantity(
    db: AsyncSession, batch_id: str, stage_order: int, quantity_out: Decimal
) -> None:
    """``quantity_out`` must cover what later stages of the batch already received."""
    overfed = (
        await db.execute(
            select(StageRecord)
            .where(
                StageRecord.batch_id == batch_id,
                StageRecord.stage_order > stage_order,
                StageRecord.quantity_in > quantity_out,
            )
            .order_by(StageRecord.stage_order.asc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if overfed is not None:
        raise ValidationError(
            f"Quantity out ({quantity_out:.2f}) is less than the "
            f"{overfed.quantity_in:.2f} already received by the downstream "
            f"{overfed.stage.value} stage ({overfed.id})",
            details={
                "downstream_id": overfed.id,
                "downstream_quantity_in": str(overfed.quantity_in),
            },
        )


async def flush_record(db: AsyncSession, record: StageRecord) -> None:
    """Flush a write to ``record``.

    The open-stage unique index catches a concurrent writer that slipped
    past the single-open check; that surfaces as a ValidationError like
    the check itself.  Any other integrity error propagates unchanged.
    """
    try:
        await db.flush()
    except IntegrityError as exc:
        message = str(exc.orig)
        if OPEN_STAGE_INDEX not in message and (
            "stage_records.batch_id, stage_records.stage" not in message
        ):
            raise
        raise ValidationError(
            f"Batch {record.batch_id} already has an open {record.stage.value} stage",
            error_code="DUPLICATE_RECORD",
            details={"batch_id": record.batch_id, "stage": record.stage.value},
        ) from exc


def _normalize(values: dict) -> dict:
    for name in DATE_FIELDS:
        if name in values:
            values[name] = as_naive_utc(values[name])
    return values


# ── Create ───────────────────────────────────────────────────

async def create_stage(db: AsyncSession, body: StageRecordCreate) -> StageRecord:
    """Validate and persist one manually reported stage record."""
    data = _normalize(body.model_dump())
    if data["stage_start_date"] is None:
        data["stage_start_date"] = utcnow()
    if data["tracking_code"] is None:
        data.pop("tracking_code")
    if data["loss_quantity"] is None:
        data["loss_quantity"] = Decimal("0")

    conservation.validate(
        data["quantity_in"], data["quantity_out"], data["loss_quantity"]
    )
    check_record_fields(data)
    await check_unique_identifiers(
        db, data.get("tracking_code"), data.get("transaction_id")
    )
    stage: Stage = data["stage"]
    if data["stage_end_date"] is None:
        await _check_single_open(db, data["batch_id"], stage)
    await _check_upstream_quantity(db, data["batch_id"], stage.order, data["quantity_in"])
    if data["quantity_out"] is not None:
        await check_downstream_quantity(
            db, data["batch_id"], stage.order, data["quantity_out"]
        )

    record = StageRecord(stage_order=stage.order, **data)
    db.add(record)
    await flush_record(db, record)
    logger.info(
        "Created %s stage %s for batch %s (in=%s)",
        stage.value, record.id, record.batch_id, record.quantity_in,
    )
    return record


# ── Update ───────────────────────────────────────────────────

async def apply_changes(db: AsyncSession, record: StageRecord, changes: dict) -> StageRecord:
    """Validate ``changes`` against ``record`` and write them.

    The record must already be loaded for update.  Partial updates that do
    not touch a quantity skip conservation re-validation.
    """
    forbidden = IMMUTABLE_FIELDS & changes.keys()
    if forbidden:
        raise ValidationError(
            f"Immutable field(s) cannot be changed: {', '.join(sorted(forbidden))}"
        )
    changes = _normalize(dict(changes))
    if "loss_quantity" in changes and changes["loss_quantity"] is None:
        changes["loss_quantity"] = Decimal("0")
    cleared = sorted(k for k in NOT_NULL_FIELDS & changes.keys() if changes[k] is None)
    if cleared:
        raise ValidationError(
            f"Field(s) cannot be cleared: {', '.join(cleared)}",
            details={"fields": cleared},
        )

    lock_info = await get_stage_locks(db, record)
    if lock_info.is_locked:
        conflict = lock_info.check_update(
            {k for k, v in changes.items() if v != getattr(record, k)}
        )
        if conflict:
            raise IllegalStateError(
                f"{conflict.reason}. {conflict.unlock_hint}",
                details={"field": conflict.field, "blocker": conflict.blocker_ref},
            )

    conservation.validate_changes(record, changes)

    merged = {
        name: changes.get(name, getattr(record, name))
        for name in (
            *REQUIRED_FIELDS, "quantity_out", "cost", "stage_end_date",
        )
    }
    check_record_fields(merged)

    await check_unique_identifiers(
        db, changes.get("tracking_code"), changes.get("transaction_id"),
        exclude_id=record.id,
    )
    if record.is_complete and "stage_end_date" in changes and changes["stage_end_date"] is None:
        await _check_single_open(db, record.batch_id, record.stage, exclude_id=record.id)
    if "quantity_in" in changes:
        await _check_upstream_quantity(
            db, record.batch_id, record.stage_order, changes["quantity_in"]
        )
    if changes.get("quantity_out") is not None:
        await check_downstream_quantity(
            db, record.batch_id, record.stage_order, changes["quantity_out"]
        )

    for field, value in changes.items():
        setattr(record, field, value)
    await flush_record(db, record)
    return record


async def update_stage(db: AsyncSession, stage_id: str, changes: dict) -> StageRecord:
    """Patch (or, given every mutable field, fully replace) one record."""
    record = await get_stage(db, stage_id, for_update=True)
    record = await apply_changes(db, record, changes)
    logger.info("Updated stage %s (%s)", stage_id, ", ".join(sorted(changes)) or "no fields")
    return record


# ── Delete ───────────────────────────────────────────────────

async def delete_stage(db: AsyncSession, stage_id: str) -> None:
    record = await get_stage(db, stage_id, for_update=True)
    await db.delete(record)
    await db.flush()
    logger.info("Deleted stage %s of batch %s", stage_id, record.batch_id)


# ── Queries ──────────────────────────────────────────────────

async def search_stages(
    db: AsyncSession, term: str, limit: int = 50, offset: int = 0
) -> tuple[list[StageRecord], int]:
    """Case-insensitive substring match over identifiers, places and notes."""
    pattern = f"%{term.strip()}%"
    condition = or_(
        StageRecord.batch_id.ilike(pattern),
        StageRecord.tracking_code.ilike(pattern),
        StageRecord.transaction_id.ilike(pattern),
        StageRecord.location.ilike(pattern),
        StageRecord.facility_name.ilike(pattern),
        StageRecord.responsible_party.ilike(pattern),
        StageRecord.handling_notes.ilike(pattern),
        StageRecord.loss_reason.ilike(pattern),
    )
    total = await db.scalar(select(func.count(StageRecord.id)).where(condition)) or 0
    items = (
        await db.execute(
            select(StageRecord)
            .where(condition)
            .order_by(StageRecord.stage_start_date.desc(), StageRecord.id)
            .limit(limit)
            .offset(offset)
        )
    ).scalars().all()
    return list(items), total


async def find_with_filters(
    db: AsyncSession, filters: StageFilter
) -> tuple[list[StageRecord], int]:
    conditions = []
    if filters.batch_id:
        conditions.append(StageRecord.batch_id == filters.batch_id)
    if filters.stage:
        conditions.append(StageRecord.stage == filters.stage)
    if filters.quality_status:
        conditions.append(StageRecord.quality_status == filters.quality_status)
    if filters.location:
        conditions.append(StageRecord.location.ilike(f"%{filters.location}%"))
    if filters.responsible_party:
        conditions.append(
            StageRecord.responsible_party.ilike(f"%{filters.responsible_party}%")
        )
    if filters.min_cost is not None:
        conditions.append(StageRecord.cost >= filters.min_cost)
    if filters.max_cost is not None:
        conditions.append(StageRecord.cost <= filters.max_cost)
    if filters.start_from:
        conditions.append(StageRecord.stage_start_date >= as_naive_utc(filters.start_from))
    if filters.start_to:
        conditions.append(StageRecord.stage_start_date <= as_naive_utc(filters.start_to))
    if filters.completed is True:
        conditions.append(StageRecord.stage_end_date.is_not(None))
    elif filters.completed is False:
        conditions.append(StageRecord.stage_end_date.is_(None))

    total = await db.scalar(
        select(func.count(StageRecord.id)).where(*conditions)
    ) or 0
    items = (
        await db.execute(
            select(StageRecord)
            .where(*conditions)
            .order_by(
                StageRecord.batch_id,
                StageRecord.stage_order,
                StageRecord.stage_start_date,
            )
            .limit(filters.limit)
            .offset(filters.offset)
        )
    ).scalars().all()
    return list(items), total


async def find_incomplete(db: AsyncSession, batch_id: str | None = None) -> list[StageRecord]:
    stmt = select(StageRecord).where(StageRecord.stage_end_date.is_(None))
    if batch_id:
        stmt = stmt.where(StageRecord.batch_id == batch_id)
    stmt = stmt.order_by(StageRecord.stage_start_date.asc())
    return list((await db.execute(stmt)).scalars().all())


async def find_completed(db: AsyncSession, batch_id: str | None = None) -> list[StageRecord]:
    stmt = select(StageRecord).where(StageRecord.stage_end_date.is_not(None))
    if batch_id:
        stmt = stmt.where(StageRecord.batch_id == batch_id)
    stmt = stmt.order_by(StageRecord.stage_end_date.desc())
    return list((await db.execute(stmt)).scalars().all())


async def find_active_at(db: AsyncSession, moment: datetime) -> list[StageRecord]:
    """Records whose lifetime covers ``moment`` (open records count as ongoing)."""
    moment = as_naive_utc(moment)
    stmt = (
        select(StageRecord)
        .where(
            StageRecord.stage_start_date <= moment,
            or_(
                StageRecord.stage_end_date.is_(None),
                StageRecord.stage_end_date >= moment,
            ),
        )
        .order_by(StageRecord.stage_start_date.asc())
    )
    return list((await db.execute(stmt)).scalars().all())


async def count_stages(db: AsyncSession, batch_id: str | None = None) -> int:
    stmt = select(func.count(StageRecord.id))
    if batch_id:
        stmt = stmt.where(StageRecord.batch_id == batch_id)
    return await db.scalar(stmt) or 0


# ── Bulk ─────────────────────────────────────────────────────
# A failure part-way raises, and the request's unit of work rolls back
# everything written so far.

async def create_stages(
    db: AsyncSession, bodies: list[StageRecordCreate]
) -> list[StageRecord]:
    created = []
    for index, body in enumerate(bodies):
        try:
            created.append(await create_stage(db, body))
        except ValidationError as exc:
            exc.details = {**(exc.details or {}), "index": index}
            raise
    logger.info("Bulk-created %d stage records", len(created))
    return created


async def update_stages(
    db: AsyncSession, updates: list[tuple[str, dict]]
) -> list[StageRecord]:
    ids = [stage_id for stage_id, _ in updates]
    records = await _load_all(db, ids)
    updated = []
    for stage_id, changes in updates:
        updated.append(await apply_changes(db, records[stage_id], changes))
    logger.info("Bulk-updated %d stage records", len(updated))
    return updated


async def delete_stages(db: AsyncSession, ids: list[str]) -> int:
    records = await _load_all(db, ids)
    for record in records.values():
        await db.delete(record)
    await db.flush()
    logger.info("Bulk-deleted %d stage records", len(records))
    return len(records)


async def _load_all(db: AsyncSession, ids: list[str]) -> dict[str, StageRecord]:
    """Lock every referenced record; fail before any write if one is missing."""
    if len(set(ids)) != len(ids):
        raise ValidationError("Duplicate ids in bulk request")
    result = await db.execute(
        select(StageRecord).where(StageRecord.id.in_(ids)).with_for_update()
    )
    records = {r.id: r for r in result.scalars().all()}
    for stage_id in ids:
        if stage_id not in records:
            raise NotFoundError("Stage record", stage_id)
    return records


# ── Retention ────────────────────────────────────────────────

async def cleanup_old_completed(db: AsyncSession, days_old: int) -> tuple[int, datetime]:
    """Delete completed records created more than ``days_old`` days ago.

    Open records are never removed, however old.  Returns the number of
    deleted rows and the cutoff used.
    """
    if days_old < 0:
        raise ValidationError(f"days_old cannot be negative ({days_old})")
    cutoff = utcnow() - timedelta(days=days_old)
    result = await db.execute(
        delete(StageRecord)
        .where(
            StageRecord.created_at < cutoff,
            StageRecord.stage_end_date.is_not(None),
        )
        .execution_options(synchronize_session=False)
    )
    deleted = result.rowcount or 0
    logger.info("Retention cleanup removed %d completed records older than %s", deleted, cutoff)
    return deleted, cutoff
