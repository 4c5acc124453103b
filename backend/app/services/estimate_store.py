"""
Estimate Version Store — numbered, priced snapshots of one takeoff version's BOQ.

Creating an estimate deep-copies the version's BOQ, prices it against the
supplied rate tables and stores the markups that were used. Later edits to the
takeoff side never reach an existing estimate.

Estimate numbers read <prefix>-<last 6 of project id>-<ordinal:03d>, e.g.
EST-9F2C41-004, with the ordinal assigned max+1 per project under the same
collision/retry rule as takeoff version numbers.
"""
import copy
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app import config
from app.models.orm_models import CostEstimate, approval_fields
from app.services import approval_workflow as wf
from app.services.boq_engine import BOQLine
from app.services.costing_engine import (
    CostingEngine,
    CostLine,
    RateTable,
    build_cost_summary,
    calculate_delta,
    recompute_on_quantity_change,
)
from app.services.errors import NotFound, ValidationError, ValidationIssue
from app.services.version_store import ensure_project, get_version, insert_numbered

logger = logging.getLogger("estimator-estimates")

ESTIMATE_TYPES = ("preliminary", "detailed", "final", "revised")


# ---------------------------------------------------------------------------
# Numbering
# ---------------------------------------------------------------------------

def format_estimate_number(project_id: str, ordinal: int, prefix: Optional[str] = None) -> str:
    """
        ("3f1e…-7a9c0d9f2c41", 4) → "EST-9F2C41-004"
    """
    suffix = re.sub(r"[^A-Za-z0-9]", "", project_id)[-config.ESTIMATE_NUMBER_PROJECT_SUFFIX_LEN:]
    return f"{prefix or config.ESTIMATE_NUMBER_PREFIX}-{suffix.upper()}-{ordinal:03d}"


async def next_estimate_ordinal(db: AsyncSession, project_id: str) -> int:
    result = await db.execute(
        select(func.max(CostEstimate.ordinal)).where(CostEstimate.project_id == project_id)
    )
    return (result.scalar() or 0) + 1


def estimate_to_dict(estimate: CostEstimate, include_lines: bool = True) -> Dict[str, Any]:
    data = {
        "id": estimate.id,
        "project_id": estimate.project_id,
        "takeoff_version_id": estimate.takeoff_version_id,
        "estimate_number": estimate.estimate_number,
        "estimate_name": estimate.estimate_name,
        "estimate_type": estimate.estimate_type,
        "location": estimate.location,
        "district": estimate.district,
        "cmpd_version": estimate.cmpd_version,
        **approval_fields(estimate),
        "ocm_pct": estimate.ocm_pct,
        "cp_pct": estimate.cp_pct,
        "vat_pct": estimate.vat_pct,
        "cost_summary": estimate.cost_summary,
        "unmapped_pay_items": estimate.unmapped_pay_items,
        "validation_errors": estimate.validation_errors,
        "base_estimate_id": estimate.base_estimate_id,
        "price_delta": estimate.price_delta,
    }
    if include_lines:
        data["estimate_lines"] = estimate.estimate_lines
        data["boq_snapshot"] = estimate.boq_snapshot
    return data


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

async def create_estimate(
    db: AsyncSession,
    takeoff_version_id: str,
    rate_tables: Iterable[Union[RateTable, Dict[str, Any]]],
    ocm_pct: Optional[float] = None,
    cp_pct: Optional[float] = None,
    vat_pct: Optional[float] = None,
    estimate_name: Optional[str] = None,
    estimate_type: str = "preliminary",
    location: Optional[str] = None,
    district: Optional[str] = None,
    cmpd_version: Optional[str] = None,
    base_estimate_id: Optional[str] = None,
    created_by: Optional[str] = None,
) -> CostEstimate:
    """
    Price a takeoff version's BOQ into a new draft estimate.

    Markups are normalized from whole percents or fractions; any left as None
    fall back to the configured defaults, then to the DPWH bracket.
    """
    if estimate_type not in ESTIMATE_TYPES:
        raise ValidationError(
            f"Unknown estimate type '{estimate_type}'",
            [ValidationIssue(code="invalid_estimate_type", message=f"expected one of {ESTIMATE_TYPES}",
                             ref=estimate_type)],
        )
    version = await get_version(db, takeoff_version_id)
    project_id = version.project_id
    version_id = version.id
    project = await ensure_project(db, project_id)
    location = location or project.location
    district = district or project.district

    base_grand_total = None
    if base_estimate_id:
        base = await get_estimate(db, base_estimate_id)
        if base.project_id != project_id:
            raise ValidationError(
                "Base estimate belongs to another project",
                [ValidationIssue(code="foreign_base_estimate", message=base.project_id, ref=base_estimate_id)],
            )
        base_grand_total = float((base.cost_summary or {}).get("grand_total", 0.0))

    boq_snapshot = copy.deepcopy(version.boq_lines or [])
    tables = [t if isinstance(t, RateTable) else RateTable.from_dict(t) for t in rate_tables]
    engine = CostingEngine(
        ocm_pct=config.DEFAULT_OCM_PCT,
        cp_pct=config.DEFAULT_CP_PCT,
        vat_pct=config.DEFAULT_VAT_PCT,
    )
    pricing = engine.price_boq(
        [BOQLine.from_dict(line) for line in boq_snapshot],
        tables,
        ocm_pct=ocm_pct,
        cp_pct=cp_pct,
        vat_pct=vat_pct,
    )
    lines = [line.to_dict() for line in pricing.lines]
    price_delta = (
        calculate_delta(base_grand_total, pricing.cost_summary["grand_total"])
        if base_grand_total is not None
        else None
    )

    def build(ordinal: int) -> CostEstimate:
        return CostEstimate(
            project_id=project_id,
            takeoff_version_id=version_id,
            estimate_number=format_estimate_number(project_id, ordinal),
            ordinal=ordinal,
            estimate_name=estimate_name,
            estimate_type=estimate_type,
            location=location,
            district=district,
            cmpd_version=cmpd_version,
            status=wf.DRAFT,
            ocm_pct=pricing.markups.ocm_pct,
            cp_pct=pricing.markups.cp_pct,
            vat_pct=pricing.markups.vat_pct,
            boq_snapshot=copy.deepcopy(boq_snapshot),
            estimate_lines=copy.deepcopy(lines),
            cost_summary=dict(pricing.cost_summary),
            unmapped_pay_items=list(pricing.unmapped_pay_items),
            validation_errors=[issue.to_dict() for issue in pricing.validation_errors],
            base_estimate_id=base_estimate_id,
            price_delta=price_delta,
            created_by=created_by,
        )

    estimate = await insert_numbered(
        db, project_id, lambda: next_estimate_ordinal(db, project_id), build
    )
    logger.info(
        f"Created cost estimate {estimate.estimate_number}: grand total "
        f"₱{pricing.cost_summary['grand_total']:,.2f}, {len(pricing.unmapped_pay_items)} unmapped",
        extra={"project_id": project_id, "estimate_number": estimate.estimate_number},
    )
    return estimate


# ---------------------------------------------------------------------------
# Draft edits
# ---------------------------------------------------------------------------

async def update_line_quantity(
    db: AsyncSession, estimate_id: str, line_index: int, quantity: float
) -> CostEstimate:
    """
    Change one line's quantity on a draft estimate. The line's per-unit
    breakdown is kept; only its total, the estimate summary and any price delta move.
    Concurrent edits are last-writer-wins.
    """
    estimate = await get_estimate(db, estimate_id)
    wf.ensure_editable(estimate, "cost estimate")

    lines = list(estimate.estimate_lines or [])
    if line_index < 0 or line_index >= len(lines):
        raise NotFound("CostLine", f"{estimate_id}[{line_index}]")

    updated = recompute_on_quantity_change(CostLine.from_dict(lines[line_index]), quantity)
    lines[line_index] = updated.to_dict()
    estimate.estimate_lines = lines
    estimate.cost_summary = build_cost_summary([CostLine.from_dict(l) for l in lines])
    if estimate.base_estimate_id:
        base = await get_estimate(db, estimate.base_estimate_id)
        estimate.price_delta = calculate_delta(
            float((base.cost_summary or {}).get("grand_total", 0.0)),
            estimate.cost_summary["grand_total"],
        )
    await db.commit()
    logger.info(
        f"Estimate {estimate.estimate_number} line {line_index} quantity → {quantity}",
        extra={"project_id": estimate.project_id, "estimate_number": estimate.estimate_number},
    )
    return estimate


# ---------------------------------------------------------------------------
# Approval workflow
# ---------------------------------------------------------------------------

async def transition_estimate(
    db: AsyncSession,
    estimate_id: str,
    action: str,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
) -> CostEstimate:
    """
    submit / approve / reject / supersede. Approving leaves earlier approved
    estimates alone; the most recently approved one is the active estimate.
    """
    estimate = await get_estimate(db, estimate_id)
    wf.apply_transition(estimate, action, actor=actor, reason=reason, entity="cost estimate")
    await db.commit()
    logger.info(
        f"Cost estimate {estimate.estimate_number} → {estimate.status}",
        extra={"project_id": estimate.project_id, "estimate_number": estimate.estimate_number},
    )
    return estimate


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_estimate(db: AsyncSession, estimate_id: str) -> CostEstimate:
    estimate = await db.get(CostEstimate, estimate_id)
    if estimate is None:
        raise NotFound("CostEstimate", estimate_id)
    return estimate


async def get_active_estimate(db: AsyncSession, project_id: str) -> Optional[CostEstimate]:
    """Most recently approved estimate (approval time, then ordinal), or None."""
    result = await db.execute(
        select(CostEstimate)
        .where(CostEstimate.project_id == project_id, CostEstimate.status == wf.APPROVED)
        .order_by(CostEstimate.approved_at.desc(), CostEstimate.ordinal.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_estimates(
    db: AsyncSession, project_id: str, status: Optional[str] = None
) -> List[CostEstimate]:
    query = select(CostEstimate).where(CostEstimate.project_id == project_id)
    if status:
        query = query.where(CostEstimate.status == status)
    result = await db.execute(query.order_by(CostEstimate.ordinal.desc()))
    return list(result.scalars().all())


async def compare_estimates(db: AsyncSession, estimate_id: str, base_estimate_id: str) -> Dict[str, Any]:
    current = await get_estimate(db, estimate_id)
    base = await get_estimate(db, base_estimate_id)
    delta = calculate_delta(
        float((base.cost_summary or {}).get("grand_total", 0.0)),
        float((current.cost_summary or {}).get("grand_total", 0.0)),
    )
    return {
        "estimate_number": current.estimate_number,
        "base_estimate_number": base.estimate_number,
        **delta,
    }
