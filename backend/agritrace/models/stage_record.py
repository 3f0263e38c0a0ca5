"""StageRecord: one batch occupying one handling stage.

A harvested batch moves through a fixed pipeline of stages.  Each time the
batch enters a stage a StageRecord is created with the quantity entering it;
when the stage is finished the record is closed with the quantity forwarded
to the next stage.  Whatever does not leave the stage is accounted for as
loss.

Pipeline:  harvest → storage → transport → processing → distribution → retail

Conservation:  quantity_out + loss_quantity ≤ quantity_in  (always)
"""

import enum
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import (
    Boolean, DateTime, Enum as SAEnum, Index, Integer,
    Numeric, String, Text, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from agritrace.database import Base
from agritrace.utils.numbering import generate_stage_id, generate_tracking_code

OPEN_STAGE_INDEX = "uq_stage_records_open_stage"

HUNDRED = Decimal("100")
CENT = Decimal("0.01")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime | None) -> datetime | None:
    """Convert an aware datetime to naive UTC; naive values pass through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def percent(part: Decimal, whole: Decimal) -> Decimal | None:
    """``part / whole × 100`` rounded half-up to 2 dp; None when whole is 0."""
    if not whole:
        return None
    return (part / whole * HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)


class StageCategory(str, enum.Enum):
    POST_HARVEST = "post_harvest"
    PROCESSING_PHASE = "processing_phase"
    DISTRIBUTION_PHASE = "distribution_phase"


class Stage(str, enum.Enum):
    """Closed, ordered pipeline.  Declaration order *is* pipeline order."""

    HARVEST = "HARVEST"
    STORAGE = "STORAGE"
    TRANSPORT = "TRANSPORT"
    PROCESSING = "PROCESSING"
    DISTRIBUTION = "DISTRIBUTION"
    RETAIL = "RETAIL"

    @property
    def order(self) -> int:
        return _STAGE_SEQUENCE.index(self) + 1

    @property
    def next_stage(self) -> "Stage | None":
        idx = _STAGE_SEQUENCE.index(self)
        if idx + 1 < len(_STAGE_SEQUENCE):
            return _STAGE_SEQUENCE[idx + 1]
        return None

    @property
    def previous_stage(self) -> "Stage | None":
        idx = _STAGE_SEQUENCE.index(self)
        return _STAGE_SEQUENCE[idx - 1] if idx > 0 else None

    @property
    def is_terminal(self) -> bool:
        return self.next_stage is None

    @property
    def display_name(self) -> str:
        return self.value.title()

    @property
    def category(self) -> StageCategory:
        return _STAGE_CATEGORIES[self]

    @classmethod
    def first(cls) -> "Stage":
        return _STAGE_SEQUENCE[0]

    @classmethod
    def terminal(cls) -> "Stage":
        return _STAGE_SEQUENCE[-1]


_STAGE_SEQUENCE: tuple[Stage, ...] = tuple(Stage)

_STAGE_CATEGORIES = {
    Stage.HARVEST: StageCategory.POST_HARVEST,
    Stage.STORAGE: StageCategory.PROCESSING_PHASE,
    Stage.TRANSPORT: StageCategory.DISTRIBUTION_PHASE,
    Stage.PROCESSING: StageCategory.PROCESSING_PHASE,
    Stage.DISTRIBUTION: StageCategory.DISTRIBUTION_PHASE,
    Stage.RETAIL: StageCategory.DISTRIBUTION_PHASE,
}


class QualityStatus(str, enum.Enum):
    PENDING = "PENDING"
    PASSED = "PASSED"
    FLAGGED = "FLAGGED"
    REJECTED = "REJECTED"

    @property
    def is_issue(self) -> bool:
        return self in QUALITY_ISSUE_STATUSES


QUALITY_ISSUE_STATUSES = (QualityStatus.FLAGGED, QualityStatus.REJECTED)


class StageRecord(Base):
    __tablename__ = "stage_records"
    __table_args__ = (
        Index("ix_stage_records_batch_order", "batch_id", "stage_order"),
        # At most one open record per (batch, stage)
        Index(
            OPEN_STAGE_INDEX, "batch_id", "stage",
            unique=True,
            postgresql_where=text("stage_end_date IS NULL"),
            sqlite_where=text("stage_end_date IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(
        String(20), primary_key=True, default=generate_stage_id
    )

    # ── Identity (immutable after creation) ──────────────────
    batch_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    stage: Mapped[Stage] = mapped_column(SAEnum(Stage), nullable=False, index=True)
    stage_order: Mapped[int] = mapped_column(Integer, nullable=False)

    # ── External identifiers ─────────────────────────────────
    tracking_code: Mapped[str] = mapped_column(
        String(50), unique=True, nullable=False, default=generate_tracking_code
    )
    transaction_id: Mapped[str | None] = mapped_column(String(50), unique=True)

    # ── Quantities ───────────────────────────────────────────
    quantity_in: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    # Null until the stage is completed
    quantity_out: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    loss_quantity: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    unit: Mapped[str] = mapped_column(String(20), default="KG", nullable=False)
    loss_reason: Mapped[str | None] = mapped_column(String(255))

    # ── Quality ──────────────────────────────────────────────
    quality_status: Mapped[QualityStatus] = mapped_column(
        SAEnum(QualityStatus), default=QualityStatus.PENDING, nullable=False, index=True
    )
    quality_tests: Mapped[str | None] = mapped_column(Text)

    # ── Where / who ──────────────────────────────────────────
    location: Mapped[str] = mapped_column(String(255), nullable=False)
    facility_name: Mapped[str | None] = mapped_column(String(100))
    responsible_party: Mapped[str] = mapped_column(String(100), nullable=False)
    next_stage_location: Mapped[str | None] = mapped_column(String(255))

    # ── Handling conditions ──────────────────────────────────
    storage_conditions: Mapped[str | None] = mapped_column(String(100))
    transport_method: Mapped[str | None] = mapped_column(String(100))
    # Free-form readings, usually JSON-encoded lists from sensors
    temperature_log: Mapped[str | None] = mapped_column(Text)
    humidity_log: Mapped[str | None] = mapped_column(Text)
    handling_notes: Mapped[str | None] = mapped_column(Text)
    compliance_certificates: Mapped[str | None] = mapped_column(String(255))
    insurance_coverage: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # ── Cost ─────────────────────────────────────────────────
    cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))

    # ── Lifetime ─────────────────────────────────────────────
    stage_start_date: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False, index=True
    )
    # Null means the stage is still open
    stage_end_date: Mapped[datetime | None] = mapped_column(DateTime, index=True)

    # ── Metadata ─────────────────────────────────────────────
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    # ── Derived ──────────────────────────────────────────────

    @property
    def is_complete(self) -> bool:
        return self.stage_end_date is not None

    @property
    def has_losses(self) -> bool:
        return bool(self.loss_quantity) and self.loss_quantity > 0

    @property
    def has_quality_issues(self) -> bool:
        return self.quality_status is not None and self.quality_status.is_issue

    @property
    def loss_percentage(self) -> Decimal | None:
        return percent(self.loss_quantity or Decimal("0"), self.quantity_in)

    @property
    def efficiency_rate(self) -> Decimal | None:
        if self.quantity_out is None:
            return None
        return percent(self.quantity_out, self.quantity_in)

    @property
    def duration(self) -> timedelta | None:
        if self.stage_end_date is None or self.stage_start_date is None:
            return None
        return self.stage_end_date - self.stage_start_date

    @property
    def duration_hours(self) -> float | None:
        d = self.duration
        return round(d.total_seconds() / 3600, 2) if d is not None else None

    def __repr__(self) -> str:
        return (
            f"<StageRecord {self.id} batch={self.batch_id} stage={self.stage} "
            f"in={self.quantity_in} out={self.quantity_out} loss={self.loss_quantity}>"
        )
