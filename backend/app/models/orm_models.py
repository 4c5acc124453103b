"""ORM Models for the DPWH quantity-to-cost pipeline — SQLAlchemy 2.0"""
import uuid
from datetime import datetime, timezone
from typing import Any, Optional
from sqlalchemy import (
    JSON, String, Text, Integer, Float, DateTime, ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from app.db import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def gen_uuid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


# ── PROJECTS ──────────────────────────────────────────────────────────────────
class Project(Base):
    __tablename__ = "projects"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(255))
    district: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    takeoff_versions: Mapped[list["TakeoffVersion"]] = relationship(
        "TakeoffVersion", back_populates="project"
    )


# ── CALCULATION RUNS ──────────────────────────────────────────────────────────
class CalculationRun(Base):
    """One pass raw lines → BOQ. Append-only; never mutated once completed/failed."""
    __tablename__ = "calculation_runs"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    run_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id"), nullable=False)
    takeoff_version_id: Mapped[Optional[str]] = mapped_column(String(36))
    status: Mapped[str] = mapped_column(String(20), default="running", nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    raw_lines: Mapped[list] = mapped_column(JSONType, default=list)
    boq_lines: Mapped[list] = mapped_column(JSONType, default=list)
    summary: Mapped[dict] = mapped_column(JSONType, default=dict)
    validation_errors: Mapped[list] = mapped_column(JSONType, default=list)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    __table_args__ = (
        Index("ix_calc_runs_project_started", "project_id", "started_at"),
    )


# ── TAKEOFF VERSIONS ──────────────────────────────────────────────────────────
class TakeoffVersion(Base):
    __tablename__ = "takeoff_versions"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id"), nullable=False)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    version_type: Mapped[str] = mapped_column(String(20), default="preliminary")
    # "preliminary" | "detailed" | "revised" | "final" | "as-built"
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="draft", nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(255))
    submitted_by: Mapped[Optional[str]] = mapped_column(String(255))
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[Optional[str]] = mapped_column(String(255))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rejected_by: Mapped[Optional[str]] = mapped_column(String(255))
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    superseded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Design snapshot, one column per category (see design_schema.DesignSnapshot)
    grid: Mapped[dict] = mapped_column(JSONType, default=dict)
    levels: Mapped[list] = mapped_column(JSONType, default=list)
    element_templates: Mapped[list] = mapped_column(JSONType, default=list)
    element_instances: Mapped[list] = mapped_column(JSONType, default=list)
    spaces: Mapped[list] = mapped_column(JSONType, default=list)
    openings: Mapped[list] = mapped_column(JSONType, default=list)
    finish_types: Mapped[list] = mapped_column(JSONType, default=list)
    space_finish_assignments: Mapped[list] = mapped_column(JSONType, default=list)
    wall_surfaces: Mapped[list] = mapped_column(JSONType, default=list)
    wall_surface_finish_assignments: Mapped[list] = mapped_column(JSONType, default=list)
    truss_design: Mapped[Optional[dict]] = mapped_column(JSONType)
    roof_types: Mapped[list] = mapped_column(JSONType, default=list)
    roof_planes: Mapped[list] = mapped_column(JSONType, default=list)
    schedule_items: Mapped[list] = mapped_column(JSONType, default=list)

    # Computed quantities
    calc_run_id: Mapped[Optional[str]] = mapped_column(String(64))
    boq_lines: Mapped[list] = mapped_column(JSONType, default=list)
    total_concrete_m3: Mapped[float] = mapped_column(Float, default=0.0)
    total_rebar_kg: Mapped[float] = mapped_column(Float, default=0.0)
    total_formwork_m2: Mapped[float] = mapped_column(Float, default=0.0)
    boq_line_count: Mapped[int] = mapped_column(Integer, default=0)

    parent_version_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("takeoff_versions.id")
    )
    changes_summary: Mapped[Optional[dict]] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )
    project: Mapped["Project"] = relationship("Project", back_populates="takeoff_versions")
    __table_args__ = (
        UniqueConstraint("project_id", "version_number", name="uq_takeoff_version_number"),
        Index("ix_takeoff_versions_project_status", "project_id", "status"),
    )


# ── COST ESTIMATES ────────────────────────────────────────────────────────────
class CostEstimate(Base):
    """Priced snapshot of one takeoff version's BOQ. Lines are owned copies."""
    __tablename__ = "cost_estimates"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id"), nullable=False)
    takeoff_version_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("takeoff_versions.id"), nullable=False
    )
    estimate_number: Mapped[str] = mapped_column(String(64), nullable=False)
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)
    estimate_name: Mapped[Optional[str]] = mapped_column(String(255))
    estimate_type: Mapped[str] = mapped_column(String(20), default="preliminary")
    location: Mapped[Optional[str]] = mapped_column(String(255))
    district: Mapped[Optional[str]] = mapped_column(String(255))
    cmpd_version: Mapped[Optional[str]] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(20), default="draft", nullable=False)

    # Markups captured at creation, as fractions (0.12 = 12 %)
    ocm_pct: Mapped[float] = mapped_column(Float, nullable=False)
    cp_pct: Mapped[float] = mapped_column(Float, nullable=False)
    vat_pct: Mapped[float] = mapped_column(Float, nullable=False)

    boq_snapshot: Mapped[list] = mapped_column(JSONType, default=list)
    estimate_lines: Mapped[list] = mapped_column(JSONType, default=list)
    cost_summary: Mapped[dict] = mapped_column(JSONType, default=dict)
    unmapped_pay_items: Mapped[list] = mapped_column(JSONType, default=list)
    validation_errors: Mapped[list] = mapped_column(JSONType, default=list)
    base_estimate_id: Mapped[Optional[str]] = mapped_column(String(36))
    price_delta: Mapped[Optional[dict]] = mapped_column(JSONType)

    created_by: Mapped[Optional[str]] = mapped_column(String(255))
    submitted_by: Mapped[Optional[str]] = mapped_column(String(255))
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[Optional[str]] = mapped_column(String(255))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rejected_by: Mapped[Optional[str]] = mapped_column(String(255))
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    superseded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )
    __table_args__ = (
        UniqueConstraint("project_id", "estimate_number", name="uq_cost_estimate_number"),
        Index("ix_cost_estimates_project_status", "project_id", "status"),
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def approval_fields(record: Any) -> dict:
    """Status + actor/timestamp columns shared by versions and estimates."""
    return {
        "status": record.status,
        "created_by": record.created_by,
        "submitted_by": record.submitted_by,
        "submitted_at": _iso(record.submitted_at),
        "approved_by": record.approved_by,
        "approved_at": _iso(record.approved_at),
        "rejected_by": record.rejected_by,
        "rejected_at": _iso(record.rejected_at),
        "rejection_reason": record.rejection_reason,
        "superseded_at": _iso(record.superseded_at),
        "created_at": _iso(record.created_at),
    }
