"""costing_pipeline_schema

Revision ID: 001_costing_pipeline
Revises:
Create Date: 2026-10-19

Creates the quantity-to-cost pipeline tables:
- projects
- calculation_runs (append-only run history, unique run_id)
- takeoff_versions (unique project_id + version_number)
- cost_estimates (unique project_id + estimate_number)

Each table is skipped when it already exists, so the migration is safe to run
after Base.metadata.create_all() has created the schema.
"""
import logging
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision = '001_costing_pipeline'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger("alembic.001")

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


def _table_exists(conn, table_name: str) -> bool:
    return sa.inspect(conn).has_table(table_name)


def _approval_columns():
    return [
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("created_by", sa.String(255)),
        sa.Column("submitted_by", sa.String(255)),
        sa.Column("submitted_at", sa.DateTime(timezone=True)),
        sa.Column("approved_by", sa.String(255)),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("rejected_by", sa.String(255)),
        sa.Column("rejected_at", sa.DateTime(timezone=True)),
        sa.Column("rejection_reason", sa.Text()),
        sa.Column("superseded_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    conn = op.get_bind()

    # ── projects ──────────────────────────────────────────────────────────────
    if not _table_exists(conn, "projects"):
        op.create_table(
            "projects",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("location", sa.String(255)),
            sa.Column("district", sa.String(255)),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        logger.info("Created table: projects")

    # ── calculation_runs ──────────────────────────────────────────────────────
    if not _table_exists(conn, "calculation_runs"):
        op.create_table(
            "calculation_runs",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("run_id", sa.String(64), nullable=False, unique=True),
            sa.Column("project_id", sa.String(36), sa.ForeignKey("projects.id"), nullable=False),
            sa.Column("takeoff_version_id", sa.String(36)),
            sa.Column("status", sa.String(20), nullable=False, server_default="running"),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("completed_at", sa.DateTime(timezone=True)),
            sa.Column("raw_lines", JSONType),
            sa.Column("boq_lines", JSONType),
            sa.Column("summary", JSONType),
            sa.Column("validation_errors", JSONType),
            sa.Column("error_message", sa.Text()),
        )
        op.create_index("ix_calc_runs_project_started", "calculation_runs", ["project_id", "started_at"])
        logger.info("Created table: calculation_runs")

    # ── takeoff_versions ──────────────────────────────────────────────────────
    if not _table_exists(conn, "takeoff_versions"):
        snapshot_columns = [
            sa.Column(name, JSONType)
            for name in (
                "grid", "levels", "element_templates", "element_instances", "spaces",
                "openings", "finish_types", "space_finish_assignments", "wall_surfaces",
                "wall_surface_finish_assignments", "truss_design", "roof_types",
                "roof_planes", "schedule_items",
            )
        ]
        op.create_table(
            "takeoff_versions",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("project_id", sa.String(36), sa.ForeignKey("projects.id"), nullable=False),
            sa.Column("version_number", sa.Integer(), nullable=False),
            sa.Column("label", sa.String(255), nullable=False),
            sa.Column("version_type", sa.String(20), server_default="preliminary"),
            sa.Column("description", sa.Text()),
            *snapshot_columns,
            sa.Column("calc_run_id", sa.String(64)),
            sa.Column("boq_lines", JSONType),
            sa.Column("total_concrete_m3", sa.Float(), server_default="0"),
            sa.Column("total_rebar_kg", sa.Float(), server_default="0"),
            sa.Column("total_formwork_m2", sa.Float(), server_default="0"),
            sa.Column("boq_line_count", sa.Integer(), server_default="0"),
            sa.Column("parent_version_id", sa.String(36), sa.ForeignKey("takeoff_versions.id")),
            sa.Column("changes_summary", JSONType),
            *_approval_columns(),
            sa.UniqueConstraint("project_id", "version_number", name="uq_takeoff_version_number"),
        )
        op.create_index("ix_takeoff_versions_project_status", "takeoff_versions", ["project_id", "status"])
        logger.info("Created table: takeoff_versions")

    # ── cost_estimates ────────────────────────────────────────────────────────
    if not _table_exists(conn, "cost_estimates"):
        op.create_table(
            "cost_estimates",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("project_id", sa.String(36), sa.ForeignKey("projects.id"), nullable=False),
            sa.Column("takeoff_version_id", sa.String(36), sa.ForeignKey("takeoff_versions.id"),
                      nullable=False),
            sa.Column("estimate_number", sa.String(64), nullable=False),
            sa.Column("ordinal", sa.Integer(), nullable=False),
            sa.Column("estimate_name", sa.String(255)),
            sa.Column("estimate_type", sa.String(20), server_default="preliminary"),
            sa.Column("location", sa.String(255)),
            sa.Column("district", sa.String(255)),
            sa.Column("cmpd_version", sa.String(64)),
            sa.Column("ocm_pct", sa.Float(), nullable=False),
            sa.Column("cp_pct", sa.Float(), nullable=False),
            sa.Column("vat_pct", sa.Float(), nullable=False),
            sa.Column("boq_snapshot", JSONType),
            sa.Column("estimate_lines", JSONType),
            sa.Column("cost_summary", JSONType),
            sa.Column("unmapped_pay_items", JSONType),
            sa.Column("validation_errors", JSONType),
            sa.Column("base_estimate_id", sa.String(36)),
            sa.Column("price_delta", JSONType),
            *_approval_columns(),
            sa.UniqueConstraint("project_id", "estimate_number", name="uq_cost_estimate_number"),
        )
        op.create_index("ix_cost_estimates_project_status", "cost_estimates", ["project_id", "status"])
        logger.info("Created table: cost_estimates")


def downgrade() -> None:
    op.drop_table("cost_estimates")
    op.drop_table("takeoff_versions")
    op.drop_table("calculation_runs")
    op.drop_table("projects")
