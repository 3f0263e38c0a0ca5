"""Stage transition engine: close a stage and open its successor.

Moving a batch forward is always two calls:

  1. complete_stage(stage_id, quantity_out)   → closes the open record
  2. create_next_stage(batch_id, ...)         → opens the immediate successor
                                                 with quantity_in = the
                                                 predecessor's quantity_out

The engine never skips or reorders stages: "next" is the successor of the
furthest *completed* stage.  create_next_stage locks the batch's rows before
reading the predecessor so a concurrent completion can't hand it a half-set
quantity_out.
"""

import logging
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from agritrace.middleware.exceptions import (
    IllegalStateError,
    NotFoundError,
    ValidationError,
)
from agritrace.models.stage_record import QualityStatus, Stage, StageRecord, as_naive_utc, utcnow
from agritrace.schemas.stage import CompletionRequest, HarvestRequest, NextStageRequest
from agritrace.services import conservation
from agritrace.services.stage_store import (
    check_downstream_quantity,
    check_record_fields,
    check_unique_identifiers,
    flush_record,
    get_stage,
    list_batch_stages,
)

logger = logging.getLogger(__name__)


async def complete_stage(
    db: AsyncSession, stage_id: str, body: CompletionRequest
) -> StageRecord:
    """Close an open stage with the quantity it forwards downstream.

    Raises:
        NotFoundError: unknown stage id.
        IllegalStateError: the stage is already complete.
        ConservationError: quantity_out + loss_quantity > quantity_in.
        ValidationError: a downstream stage already received more than
            quantity_out.
    """
    record = await get_stage(db, stage_id, for_update=True)
    if record.is_complete:
        raise IllegalStateError(
            f"Stage {stage_id} is already complete "
            f"(ended {record.stage_end_date.isoformat()})",
            details={"stage_id": stage_id, "stage": record.stage.value},
        )

    conservation.validate(record.quantity_in, body.quantity_out, record.loss_quantity)

    await check_downstream_quantity(
        db, record.batch_id, record.stage_order, body.quantity_out
    )

    now = utcnow()
    if record.stage_start_date > now:
        raise ValidationError(
            f"Stage {stage_id} starts in the future "
            f"({record.stage_start_date.isoformat()}) and cannot be completed yet"
        )

    record.quantity_out = body.quantity_out
    record.stage_end_date = now
    if body.handling_notes is not None:
        record.handling_notes = body.handling_notes
    if body.quality_status is not None:
        record.quality_status = body.quality_status

    await db.flush()
    logger.info(
        "Completed %s stage %s of batch %s (in=%s out=%s loss=%s)",
        record.stage.value, record.id, record.batch_id,
        record.quantity_in, record.quantity_out, record.loss_quantity,
    )
    return record


async def create_next_stage(
    db: AsyncSession, batch_id: str, body: NextStageRequest
) -> StageRecord:
    """Open the successor of the batch's furthest completed stage.

    Raises:
        NotFoundError: the batch has no stage records at all.
        ValidationError: no completed stage yet, the furthest completed stage
            is terminal, or the successor stage is already open.
    """
    records = await list_batch_stages(db, batch_id, for_update=True)
    if not records:
        raise NotFoundError("Batch", batch_id)

    completed = [r for r in records if r.is_complete]
    if not completed:
        open_stages = ", ".join(r.stage.value for r in records)
        raise ValidationError(
            f"Batch {batch_id} has no completed stage to continue from "
            f"(open: {open_stages}); complete the current stage first",
            details={"batch_id": batch_id},
        )

    predecessor = max(completed, key=lambda r: (r.stage_order, r.stage_end_date))
    successor = predecessor.stage.next_stage
    if successor is None:
        raise ValidationError(
            f"Batch {batch_id} already completed the terminal "
            f"{predecessor.stage.value} stage",
            details={"batch_id": batch_id, "stage": predecessor.stage.value},
        )

    already_open = next(
        (r for r in records if r.stage == successor and not r.is_complete), None
    )
    if already_open is not None:
        raise ValidationError(
            f"Batch {batch_id} already has an open {successor.value} stage "
            f"({already_open.id})",
            details={"open_stage_id": already_open.id},
        )

    record = StageRecord(
        batch_id=batch_id,
        stage=successor,
        stage_order=successor.order,
        quantity_in=predecessor.quantity_out,
        quantity_out=None,
        loss_quantity=Decimal("0"),
        unit=predecessor.unit,
        quality_status=QualityStatus.PENDING,
        location=body.location,
        responsible_party=body.responsible_party,
        facility_name=body.facility_name,
        stage_start_date=utcnow(),
    )
    db.add(record)
    await flush_record(db, record)
    logger.info(
        "Batch %s moved %s → %s (stage %s, in=%s)",
        batch_id, predecessor.stage.value, successor.value,
        record.id, record.quantity_in,
    )
    return record


async def start_batch(
    db: AsyncSession, batch_id: str, body: HarvestRequest
) -> StageRecord:
    """Open the harvest stage of a batch that has no records yet."""
    existing = await list_batch_stages(db, batch_id, for_update=True)
    if existing:
        raise ValidationError(
            f"Batch {batch_id} already has {len(existing)} stage record(s)",
            details={"batch_id": batch_id},
        )

    conservation.validate(body.quantity_in)
    first = Stage.first()
    data = body.model_dump(exclude_none=True)
    data["stage_start_date"] = as_naive_utc(data.get("stage_start_date")) or utcnow()

    check_record_fields(data)
    await check_unique_identifiers(db, data.get("tracking_code"), data.get("transaction_id"))

    record = StageRecord(
        batch_id=batch_id,
        stage=first,
        stage_order=first.order,
        loss_quantity=Decimal("0"),
        quality_status=QualityStatus.PENDING,
        **data,
    )
    db.add(record)
    await flush_record(db, record)
    logger.info(
        "Started batch %s at %s (stage %s, in=%s)",
        batch_id, first.value, record.id, record.quantity_in,
    )
    return record
