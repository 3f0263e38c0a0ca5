"""Pydantic schemas for chain summaries, batch metrics and fleet statistics."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from agritrace.models.stage_record import QualityStatus, Stage
from agritrace.schemas.common import Quantity

ZERO = Decimal("0")


# ── Per-batch ────────────────────────────────────────────────

class StageTimelineEntry(BaseModel):
    id: str
    stage: Stage
    stage_order: int
    status: str  # "complete" | "open"
    tracking_code: str
    location: str
    facility_name: str | None = None
    responsible_party: str
    quality_status: QualityStatus
    quantity_in: Quantity
    quantity_out: Quantity | None = None
    loss_quantity: Quantity = ZERO
    loss_percentage: Quantity | None = None
    cost: Quantity | None = None
    stage_start_date: datetime
    stage_end_date: datetime | None = None
    duration_hours: float | None = None


class ChainSummary(BaseModel):
    batch_id: str
    total_stages: int = 0
    completed_stages: int = 0
    incomplete_stages: int = 0
    total_quantity_in: Quantity = ZERO
    total_quantity_out: Quantity = ZERO
    total_loss: Quantity = ZERO
    cumulative_loss_percentage: Quantity = ZERO
    total_cost: Quantity = ZERO
    quality_issue_count: int = 0
    current_stage: Stage | None = None
    current_stage_id: str | None = None
    is_complete: bool = False
    stage_distribution: dict[str, int] = {}
    stages: list[StageTimelineEntry] = []


class ProductionMetrics(BaseModel):
    batch_id: str
    status: str  # "no data" | "in progress" | "complete"
    total_stages: int = 0
    completed_stages: int = 0
    stages_with_losses: int = 0
    stages_with_quality_issues: int = 0
    initial_quantity: Quantity = ZERO
    final_quantity: Quantity = ZERO
    total_loss: Quantity = ZERO
    overall_loss_percentage: Quantity = ZERO
    total_cost: Quantity = ZERO
    average_cost_per_stage: Quantity = ZERO
    cost_per_unit: Quantity | None = None
    first_stage_start: datetime | None = None
    last_stage_end: datetime | None = None
    in_progress: bool = False
    total_elapsed_hours: float | None = None


class StageLossEntry(BaseModel):
    id: str
    stage: Stage
    loss_quantity: Quantity
    loss_percentage: Quantity


class StageDurationEntry(BaseModel):
    id: str
    stage: Stage
    duration_hours: float


class PerformanceAnalysis(BaseModel):
    batch_id: str
    insufficient_data: bool = False
    alert_threshold_pct: float
    bottleneck: StageLossEntry | None = None
    longest_stage: StageDurationEntry | None = None
    loss_alerts: list[StageLossEntry] = []
    average_efficiency: Quantity | None = None
    min_efficiency: Quantity | None = None
    max_efficiency: Quantity | None = None
    loss_by_stage: dict[str, Quantity] = {}
    cost_by_stage: dict[str, Quantity] = {}
    duration_by_stage: dict[str, float] = {}
    quality_distribution: dict[str, int] = {}


class TrackingInfo(BaseModel):
    tracking_code: str
    batch_id: str
    current: StageTimelineEntry
    journey: list[StageTimelineEntry]
    total_stages: int
    completed_stages: int
    progress_percentage: float
    next_stage: Stage | None = None


# ── Fleet-wide ───────────────────────────────────────────────

class StageDurationStats(BaseModel):
    completed: int
    average_hours: float
    min_hours: float
    max_hours: float


class LossContributor(BaseModel):
    id: str
    batch_id: str
    stage: Stage
    loss_quantity: Quantity
    loss_percentage: Quantity | None = None
    loss_reason: str | None = None


class LossStatistics(BaseModel):
    total_loss: Quantity = ZERO
    stages_with_losses: int = 0
    average_loss_percentage: Quantity = ZERO
    loss_by_stage: dict[str, Quantity] = {}
    top_contributors: list[LossContributor] = []
