"""Pydantic schemas for stage record operations.

Request structs are typed per operation (completion, loss update, quality
update, next stage) rather than free-form maps, so malformed payloads are
rejected at the boundary.  Identity fields (batch_id, stage, stage_order)
only appear on the create schema.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from agritrace.models.stage_record import QualityStatus, Stage
from agritrace.schemas.common import Quantity


def _qty(default=None, **kwargs):
    return Field(default, ge=0, max_digits=12, decimal_places=2, **kwargs)


# ── Create ───────────────────────────────────────────────────

class StageRecordCreate(BaseModel):
    batch_id: str = Field(..., min_length=1, max_length=50)
    stage: Stage
    location: str = Field(..., min_length=1, max_length=255)
    responsible_party: str = Field(..., min_length=1, max_length=100)
    quantity_in: Decimal = _qty(...)

    # Optional fields
    quantity_out: Decimal | None = _qty()
    loss_quantity: Decimal = _qty(Decimal("0"))
    unit: str = Field("KG", max_length=20)
    loss_reason: str | None = Field(None, max_length=255)
    quality_status: QualityStatus = QualityStatus.PENDING
    quality_tests: str | None = None
    facility_name: str | None = Field(None, max_length=100)
    next_stage_location: str | None = Field(None, max_length=255)
    storage_conditions: str | None = Field(None, max_length=100)
    transport_method: str | None = Field(None, max_length=100)
    temperature_log: str | None = None
    humidity_log: str | None = None
    handling_notes: str | None = Field(None, max_length=3000)
    compliance_certificates: str | None = Field(None, max_length=255)
    insurance_coverage: bool = False
    cost: Decimal | None = _qty()
    stage_start_date: datetime | None = None
    stage_end_date: datetime | None = None
    tracking_code: str | None = Field(None, max_length=50)
    transaction_id: str | None = Field(None, max_length=50)


# ── Update (partial) ─────────────────────────────────────────

class StageRecordUpdate(BaseModel):
    quantity_in: Decimal | None = _qty()
    quantity_out: Decimal | None = _qty()
    loss_quantity: Decimal | None = _qty()
    unit: str | None = Field(None, max_length=20)
    loss_reason: str | None = Field(None, max_length=255)
    quality_status: QualityStatus | None = None
    quality_tests: str | None = None
    location: str | None = Field(None, min_length=1, max_length=255)
    facility_name: str | None = Field(None, max_length=100)
    responsible_party: str | None = Field(None, min_length=1, max_length=100)
    next_stage_location: str | None = Field(None, max_length=255)
    storage_conditions: str | None = Field(None, max_length=100)
    transport_method: str | None = Field(None, max_length=100)
    temperature_log: str | None = None
    humidity_log: str | None = None
    handling_notes: str | None = Field(None, max_length=3000)
    compliance_certificates: str | None = Field(None, max_length=255)
    insurance_coverage: bool | None = None
    cost: Decimal | None = _qty()
    stage_start_date: datetime | None = None
    stage_end_date: datetime | None = None
    tracking_code: str | None = Field(None, max_length=50)
    transaction_id: str | None = Field(None, max_length=50)


# ── Replace (full update of the mutable fields) ──────────────

class StageRecordReplace(BaseModel):
    location: str = Field(..., min_length=1, max_length=255)
    responsible_party: str = Field(..., min_length=1, max_length=100)
    quantity_in: Decimal = _qty(...)
    quantity_out: Decimal | None = _qty()
    loss_quantity: Decimal = _qty(Decimal("0"))
    unit: str = Field("KG", max_length=20)
    loss_reason: str | None = Field(None, max_length=255)
    quality_status: QualityStatus = QualityStatus.PENDING
    quality_tests: str | None = None
    facility_name: str | None = Field(None, max_length=100)
    next_stage_location: str | None = Field(None, max_length=255)
    storage_conditions: str | None = Field(None, max_length=100)
    transport_method: str | None = Field(None, max_length=100)
    temperature_log: str | None = None
    humidity_log: str | None = None
    handling_notes: str | None = Field(None, max_length=3000)
    compliance_certificates: str | None = Field(None, max_length=255)
    insurance_coverage: bool = False
    cost: Decimal | None = _qty()
    stage_end_date: datetime | None = None


# ── Operation requests ───────────────────────────────────────

class CompletionRequest(BaseModel):
    """Close an open stage with the quantity forwarded downstream."""
    quantity_out: Decimal = _qty(...)
    handling_notes: str | None = Field(None, max_length=3000)
    quality_status: QualityStatus | None = None


class NextStageRequest(BaseModel):
    location: str = Field(..., min_length=1, max_length=255)
    responsible_party: str = Field(..., min_length=1, max_length=100)
    facility_name: str | None = Field(None, max_length=100)


class HarvestRequest(BaseModel):
    """Open the first (harvest) stage of a new batch."""
    location: str = Field(..., min_length=1, max_length=255)
    responsible_party: str = Field(..., min_length=1, max_length=100)
    quantity_in: Decimal = _qty(...)
    facility_name: str | None = Field(None, max_length=100)
    unit: str = Field("KG", max_length=20)
    cost: Decimal | None = _qty()
    stage_start_date: datetime | None = None
    tracking_code: str | None = Field(None, max_length=50)
    transaction_id: str | None = Field(None, max_length=50)
    handling_notes: str | None = Field(None, max_length=3000)


class QualityUpdateRequest(BaseModel):
    quality_status: QualityStatus
    quality_tests: str | None = None


class LossUpdateRequest(BaseModel):
    loss_quantity: Decimal | None = _qty()
    loss_reason: str | None = Field(None, max_length=255)


# ── Bulk ─────────────────────────────────────────────────────

class BulkStageUpdateItem(StageRecordUpdate):
    id: str


class BulkDeleteRequest(BaseModel):
    ids: list[str] = Field(..., min_length=1)


class CleanupResult(BaseModel):
    deleted: int
    cutoff: datetime


# ── Filters ──────────────────────────────────────────────────

class StageFilter(BaseModel):
    batch_id: str | None = None
    stage: Stage | None = None
    quality_status: QualityStatus | None = None
    location: str | None = None
    responsible_party: str | None = None
    min_cost: Decimal | None = None
    max_cost: Decimal | None = None
    start_from: datetime | None = None
    start_to: datetime | None = None
    completed: bool | None = None
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)


# ── Response ─────────────────────────────────────────────────

class StageRecordOut(BaseModel):
    id: str
    batch_id: str
    stage: Stage
    stage_order: int
    tracking_code: str
    transaction_id: str | None
    quantity_in: Quantity
    quantity_out: Quantity | None
    loss_quantity: Quantity
    unit: str | None
    loss_reason: str | None
    quality_status: QualityStatus
    quality_tests: str | None
    location: str
    facility_name: str | None
    responsible_party: str
    next_stage_location: str | None
    storage_conditions: str | None
    transport_method: str | None
    temperature_log: str | None
    humidity_log: str | None
    handling_notes: str | None
    compliance_certificates: str | None
    insurance_coverage: bool | None
    cost: Quantity | None
    stage_start_date: datetime
    stage_end_date: datetime | None
    created_at: datetime
    updated_at: datetime

    # Derived
    is_complete: bool
    loss_percentage: Quantity | None = None
    efficiency_rate: Quantity | None = None
    duration_hours: float | None = None

    model_config = {"from_attributes": True}


class StageRecordDetail(StageRecordOut):
    locked_fields: list[str] = []
