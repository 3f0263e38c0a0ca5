"""Downstream locking: prevent edits to fields a later stage depends on.

When a batch already has a record downstream of a completed stage, the
downstream record's ``quantity_in`` was carried over from this stage's
``quantity_out``.  Editing that output (or re-opening the stage) would
silently break the chain, so those fields are locked.

Check functions return a LockInfo describing which fields are locked and
why, without raising.  The caller decides whether to block the request
based on which fields are being updated.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agritrace.models.stage_record import StageRecord


# ── Data structures ────────────────────────────────────────────


@dataclass
class FieldLock:
    """A single locked field with reason and unlock instructions."""
    field: str
    reason: str
    blocker_type: str   # "downstream_stage"
    blocker_ref: str    # tracking code of the blocking record
    unlock_hint: str


@dataclass
class LockInfo:
    """Lock state for a record.  Empty locked_fields means nothing locked."""
    locked_fields: dict[str, FieldLock] = field(default_factory=dict)

    @property
    def is_locked(self) -> bool:
        return len(self.locked_fields) > 0

    def check_update(self, updating_fields: set[str]) -> FieldLock | None:
        """Return the first FieldLock that conflicts, or None."""
        for f in sorted(updating_fields):
            if f in self.locked_fields:
                return self.locked_fields[f]
        return None

    def locked_field_names(self) -> list[str]:
        return list(self.locked_fields.keys())


def _add_locks(
    info: LockInfo,
    field_names: list[str],
    reason: str,
    blocker_type: str,
    blocker_ref: str,
    unlock_hint: str,
) -> None:
    for name in field_names:
        info.locked_fields[name] = FieldLock(
            field=name,
            reason=f"Cannot edit {name}: {reason}",
            blocker_type=blocker_type,
            blocker_ref=blocker_ref,
            unlock_hint=unlock_hint,
        )


# ── Stage locks (downstream: later stage records of the batch) ──


STAGE_OUTPUT_FIELDS = ["quantity_out", "stage_end_date"]


async def get_stage_locks(db: AsyncSession, record: StageRecord) -> LockInfo:
    """Check whether a completed stage already feeds a downstream record."""
    info = LockInfo()

    if not record.is_complete:
        return info

    downstream = (
        StageRecord.batch_id == record.batch_id,
        StageRecord.stage_order > record.stage_order,
    )
    count = await db.scalar(
        select(func.count(StageRecord.id)).where(*downstream)
    ) or 0
    if count == 0:
        return info

    first = (
        await db.execute(
            select(StageRecord.tracking_code, StageRecord.stage)
            .where(*downstream)
            .order_by(StageRecord.stage_order.asc())
            .limit(1)
        )
    ).one()
    suffix = f" (+{count - 1} more)" if count > 1 else ""

    _add_locks(
        info,
        STAGE_OUTPUT_FIELDS,
        reason=f"downstream {first.stage.value} stage {first.tracking_code}{suffix} was fed from this output",
        blocker_type="downstream_stage",
        blocker_ref=first.tracking_code,
        unlock_hint="Remove the downstream stage records first.",
    )
    return info
