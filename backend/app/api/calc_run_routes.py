"""
Calculation Run Routes

POST /api/projects/{id}/calcruns          — aggregate raw takeoff lines into a BOQ
GET  /api/projects/{id}/calcruns          — run history, newest first
GET  /api/projects/{id}/calcruns/latest   — most recent run (null when none)
GET  /api/projects/{id}/calcruns/{run_id} — one run with its raw and BOQ lines
"""
import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_db
from app.services import calc_run_store
from app.services.errors import NotFound

router = APIRouter(prefix="/api/projects/{project_id}/calcruns", tags=["Calculation Runs"])
logger = logging.getLogger("estimator-api.calcruns")


class RawQuantityLineIn(BaseModel):
    id: str
    source_element_id: str = ""
    trade: str
    resource_key: str = ""
    quantity: float
    unit: str
    formula_text: str = ""
    inputs_snapshot: Dict[str, Any] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    assumptions: List[str] = Field(default_factory=list)


class CatalogEntry(BaseModel):
    description: str = ""
    unit: str = ""


class CalcRunRequest(BaseModel):
    raw_lines: List[RawQuantityLineIn]
    run_id: Optional[str] = None
    takeoff_version_id: Optional[str] = None
    catalog: Dict[str, CatalogEntry] = Field(default_factory=dict)


@router.post("", status_code=201)
async def create_calc_run(
    project_id: str, req: CalcRunRequest, db: AsyncSession = Depends(get_db)
):
    run = await calc_run_store.execute_calculation_run(
        db,
        project_id,
        [line.model_dump() for line in req.raw_lines],
        run_id=req.run_id,
        takeoff_version_id=req.takeoff_version_id,
        catalog={k: v.model_dump() for k, v in req.catalog.items()} or None,
    )
    return calc_run_store.run_to_dict(run)


@router.get("")
async def list_calc_runs(
    project_id: str,
    status: Optional[Literal["running", "completed", "failed"]] = None,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    runs = await calc_run_store.list_runs(db, project_id, status=status, limit=limit)
    return [calc_run_store.run_to_dict(r, include_lines=False) for r in runs]


@router.get("/latest")
async def latest_calc_run(project_id: str, db: AsyncSession = Depends(get_db)):
    run = await calc_run_store.get_latest_run(db, project_id)
    return calc_run_store.run_to_dict(run) if run else None


@router.get("/{run_id}")
async def get_calc_run(project_id: str, run_id: str, db: AsyncSession = Depends(get_db)):
    run = await calc_run_store.get_run(db, run_id)
    if run.project_id != project_id:
        raise NotFound("CalculationRun", run_id)
    return calc_run_store.run_to_dict(run)
