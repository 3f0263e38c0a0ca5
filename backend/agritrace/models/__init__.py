"""Aggregate model imports for Alembic auto-detection."""

from agritrace.models.stage_record import (  # noqa: F401
    QUALITY_ISSUE_STATUSES,
    QualityStatus,
    Stage,
    StageCategory,
    StageRecord,
)
