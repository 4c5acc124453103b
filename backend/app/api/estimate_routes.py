"""
Cost Estimate Routes

POST  /api/takeoff-versions/{version_id}/cost-estimates — price a version's BOQ
GET   /api/projects/{id}/cost-estimates                 — list, newest first
GET   /api/projects/{id}/cost-estimates/active          — most recently approved (null when none)
GET   /api/cost-estimates/{id}                          — one estimate with its lines
GET   /api/cost-estimates/{id}/status                   — status and approval stamps
PATCH /api/cost-estimates/{id}/status                   — submit | approve | reject | supersede
PATCH /api/cost-estimates/{id}/lines/{index}            — quantity edit on a draft
GET   /api/cost-estimates/{id}/delta/{base_id}          — grand-total delta against another estimate
"""
import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_db
from app.models.orm_models import approval_fields
from app.services import estimate_store

router = APIRouter(tags=["Cost Estimates"])
logger = logging.getLogger("estimator-api.estimates")


class LaborItemIn(BaseModel):
    designation: str
    persons: float = Field(..., ge=0)
    hours: float = Field(..., ge=0)
    hourly_rate: float = Field(..., ge=0)


class EquipmentItemIn(BaseModel):
    description: str
    units: float = Field(..., ge=0)
    hours: float = Field(..., ge=0)
    hourly_rate: float = Field(..., ge=0)


class MaterialItemIn(BaseModel):
    description: str
    quantity: float = Field(..., ge=0)
    unit_cost: float = Field(..., ge=0)
    unit: str = ""


class RateTableIn(BaseModel):
    pay_item_number: str
    description: Optional[str] = None
    unit: Optional[str] = None
    labor_items: List[LaborItemIn] = Field(default_factory=list)
    equipment_items: List[EquipmentItemIn] = Field(default_factory=list)
    material_items: List[MaterialItemIn] = Field(default_factory=list)
    include_minor_tools: bool = False
    minor_tools_pct: float = 10.0


class EstimateCreateRequest(BaseModel):
    rate_tables: List[RateTableIn] = Field(default_factory=list)
    # Whole percents (12) or fractions (0.12); omitted ⇒ configured default / DPWH bracket
    ocm_pct: Optional[float] = None
    cp_pct: Optional[float] = None
    vat_pct: Optional[float] = None
    estimate_name: Optional[str] = None
    estimate_type: Literal["preliminary", "detailed", "final", "revised"] = "preliminary"
    location: Optional[str] = None
    district: Optional[str] = None
    cmpd_version: Optional[str] = None
    base_estimate_id: Optional[str] = None
    user_id: Optional[str] = None


class StatusChangeRequest(BaseModel):
    action: Literal["submit", "approve", "reject", "supersede"]
    user_id: Optional[str] = None
    reason: Optional[str] = None


class LineQuantityRequest(BaseModel):
    quantity: float = Field(..., ge=0)


@router.post("/api/takeoff-versions/{version_id}/cost-estimates", status_code=201)
async def create_cost_estimate(
    version_id: str, req: EstimateCreateRequest, db: AsyncSession = Depends(get_db)
):
    estimate = await estimate_store.create_estimate(
        db,
        version_id,
        [t.model_dump() for t in req.rate_tables],
        ocm_pct=req.ocm_pct,
        cp_pct=req.cp_pct,
        vat_pct=req.vat_pct,
        estimate_name=req.estimate_name,
        estimate_type=req.estimate_type,
        location=req.location,
        district=req.district,
        cmpd_version=req.cmpd_version,
        base_estimate_id=req.base_estimate_id,
        created_by=req.user_id,
    )
    return estimate_store.estimate_to_dict(estimate)


@router.get("/api/projects/{project_id}/cost-estimates")
async def list_cost_estimates(
    project_id: str,
    status: Optional[Literal["draft", "submitted", "approved", "rejected", "superseded"]] = None,
    db: AsyncSession = Depends(get_db),
):
    estimates = await estimate_store.list_estimates(db, project_id, status=status)
    return [estimate_store.estimate_to_dict(e, include_lines=False) for e in estimates]


@router.get("/api/projects/{project_id}/cost-estimates/active")
async def active_cost_estimate(project_id: str, db: AsyncSession = Depends(get_db)):
    estimate = await estimate_store.get_active_estimate(db, project_id)
    return estimate_store.estimate_to_dict(estimate) if estimate else None


@router.get("/api/cost-estimates/{estimate_id}")
async def get_cost_estimate(estimate_id: str, db: AsyncSession = Depends(get_db)):
    estimate = await estimate_store.get_estimate(db, estimate_id)
    return estimate_store.estimate_to_dict(estimate)


@router.get("/api/cost-estimates/{estimate_id}/status")
async def get_cost_estimate_status(estimate_id: str, db: AsyncSession = Depends(get_db)):
    estimate = await estimate_store.get_estimate(db, estimate_id)
    return {
        "id": estimate.id,
        "estimate_number": estimate.estimate_number,
        **approval_fields(estimate),
    }


@router.patch("/api/cost-estimates/{estimate_id}/status")
async def change_cost_estimate_status(
    estimate_id: str, req: StatusChangeRequest, db: AsyncSession = Depends(get_db)
):
    estimate = await estimate_store.transition_estimate(
        db, estimate_id, req.action, actor=req.user_id, reason=req.reason
    )
    return estimate_store.estimate_to_dict(estimate, include_lines=False)


@router.patch("/api/cost-estimates/{estimate_id}/lines/{line_index}")
async def update_cost_line_quantity(
    estimate_id: str,
    req: LineQuantityRequest,
    line_index: int = Path(..., ge=0),
    db: AsyncSession = Depends(get_db),
):
    estimate = await estimate_store.update_line_quantity(db, estimate_id, line_index, req.quantity)
    return {
        "line": estimate.estimate_lines[line_index],
        "cost_summary": estimate.cost_summary,
    }


@router.get("/api/cost-estimates/{estimate_id}/delta/{base_id}")
async def cost_estimate_delta(estimate_id: str, base_id: str, db: AsyncSession = Depends(get_db)):
    return await estimate_store.compare_estimates(db, estimate_id, base_id)
