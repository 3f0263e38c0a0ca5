"""Create the stage_records table.

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa

STAGES = ("HARVEST", "STORAGE", "TRANSPORT", "PROCESSING", "DISTRIBUTION", "RETAIL")
QUALITY_STATUSES = ("PENDING", "PASSED", "FLAGGED", "REJECTED")


def upgrade() -> None:
    op.create_table(
        "stage_records",
        sa.Column("id", sa.String(20), primary_key=True),
        # Identity
        sa.Column("batch_id", sa.String(50), nullable=False),
        sa.Column("stage", sa.Enum(*STAGES, name="stage"), nullable=False),
        sa.Column("stage_order", sa.Integer(), nullable=False),
        # External identifiers
        sa.Column("tracking_code", sa.String(50), nullable=False, unique=True),
        sa.Column("transaction_id", sa.String(50), unique=True),
        # Quantities
        sa.Column("quantity_in", sa.Numeric(12, 2), nullable=False),
        sa.Column("quantity_out", sa.Numeric(12, 2)),
        sa.Column("loss_quantity", sa.Numeric(12, 2), nullable=False),
        sa.Column("unit", sa.String(20), nullable=False),
        sa.Column("loss_reason", sa.String(255)),
        # Quality
        sa.Column(
            "quality_status",
            sa.Enum(*QUALITY_STATUSES, name="qualitystatus"),
            nullable=False,
        ),
        sa.Column("quality_tests", sa.Text()),
        # Where / who
        sa.Column("location", sa.String(255), nullable=False),
        sa.Column("facility_name", sa.String(100)),
        sa.Column("responsible_party", sa.String(100), nullable=False),
        sa.Column("next_stage_location", sa.String(255)),
        # Handling conditions
        sa.Column("storage_conditions", sa.String(100)),
        sa.Column("transport_method", sa.String(100)),
        sa.Column("temperature_log", sa.Text()),
        sa.Column("humidity_log", sa.Text()),
        sa.Column("handling_notes", sa.Text()),
        sa.Column("compliance_certificates", sa.String(255)),
        sa.Column("insurance_coverage", sa.Boolean(), nullable=False),
        # Cost
        sa.Column("cost", sa.Numeric(12, 2)),
        # Lifetime
        sa.Column("stage_start_date", sa.DateTime(), nullable=False),
        sa.Column("stage_end_date", sa.DateTime()),
        # Metadata
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_index("ix_stage_records_batch_id", "stage_records", ["batch_id"])
    op.create_index("ix_stage_records_stage", "stage_records", ["stage"])
    op.create_index("ix_stage_records_quality_status", "stage_records", ["quality_status"])
    op.create_index("ix_stage_records_stage_start_date", "stage_records", ["stage_start_date"])
    op.create_index("ix_stage_records_stage_end_date", "stage_records", ["stage_end_date"])
    op.create_index("ix_stage_records_created_at", "stage_records", ["created_at"])
    op.create_index(
        "ix_stage_records_batch_order", "stage_records", ["batch_id", "stage_order"]
    )
    op.create_index(
        "uq_stage_records_open_stage",
        "stage_records",
        ["batch_id", "stage"],
        unique=True,
        postgresql_where=sa.text("stage_end_date IS NULL"),
        sqlite_where=sa.text("stage_end_date IS NULL"),
    )


def downgrade() -> None:
    op.drop_table("stage_records")
    sa.Enum(name="qualitystatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="stage").drop(op.get_bind(), checkfirst=True)
