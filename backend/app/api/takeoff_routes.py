"""
Takeoff Version Routes

POST  /api/projects/{id}/takeoff-versions                    — new draft (optionally from a calc run)
GET   /api/projects/{id}/takeoff-versions                    — list, newest first
GET   /api/projects/{id}/takeoff-versions/active             — latest approved version (null when none)
GET   /api/projects/{id}/takeoff-versions/{version_id}       — one version with snapshot and BOQ
PATCH /api/projects/{id}/takeoff-versions/{version_id}       — edit a draft
PATCH /api/projects/{id}/takeoff-versions/{version_id}/status — submit | approve | reject | supersede
POST  /api/projects/{id}/takeoff-versions/{version_id}/derive — new draft copied from this version
"""
import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_db
from app.models.design_schema import DesignSnapshot
from app.models.orm_models import TakeoffVersion
from app.services import version_store
from app.services.errors import NotFound

router = APIRouter(prefix="/api/projects/{project_id}/takeoff-versions", tags=["Takeoff Versions"])
logger = logging.getLogger("estimator-api.takeoff")


class VersionCreateRequest(BaseModel):
    label: str = Field(..., min_length=1)
    version_type: Literal["preliminary", "detailed", "revised", "final", "as-built"] = "preliminary"
    description: Optional[str] = None
    snapshot: DesignSnapshot = Field(default_factory=DesignSnapshot)
    boq_lines: Optional[List[Dict[str, Any]]] = None
    calc_run_id: Optional[str] = None
    user_id: Optional[str] = None


class VersionUpdateRequest(BaseModel):
    snapshot: Optional[Dict[str, Any]] = None
    boq_lines: Optional[List[Dict[str, Any]]] = None
    label: Optional[str] = None
    description: Optional[str] = None


class StatusChangeRequest(BaseModel):
    action: Literal["submit", "approve", "reject", "supersede"]
    user_id: Optional[str] = None
    reason: Optional[str] = None


class DeriveRequest(BaseModel):
    label: Optional[str] = None
    user_id: Optional[str] = None


async def _project_version(db: AsyncSession, project_id: str, version_id: str) -> TakeoffVersion:
    version = await version_store.get_version(db, version_id)
    if version.project_id != project_id:
        raise NotFound("TakeoffVersion", version_id)
    return version


@router.post("", status_code=201)
async def create_takeoff_version(
    project_id: str, req: VersionCreateRequest, db: AsyncSession = Depends(get_db)
):
    version = await version_store.create_version(
        db,
        project_id,
        label=req.label,
        version_type=req.version_type,
        description=req.description,
        snapshot=req.snapshot,
        boq_lines=req.boq_lines,
        calc_run_id=req.calc_run_id,
        created_by=req.user_id,
    )
    return version_store.version_to_dict(version)


@router.get("")
async def list_takeoff_versions(
    project_id: str,
    include_superseded: bool = Query(False, alias="includeSuperseded"),
    db: AsyncSession = Depends(get_db),
):
    await version_store.ensure_project(db, project_id)
    versions = await version_store.list_versions(db, project_id, include_superseded=include_superseded)
    return [version_store.version_to_dict(v, include_snapshot=False) for v in versions]


@router.get("/active")
async def active_takeoff_version(project_id: str, db: AsyncSession = Depends(get_db)):
    version = await version_store.get_active_version(db, project_id)
    return version_store.version_to_dict(version) if version else None


@router.get("/{version_id}")
async def get_takeoff_version(project_id: str, version_id: str, db: AsyncSession = Depends(get_db)):
    version = await _project_version(db, project_id, version_id)
    return version_store.version_to_dict(version)


@router.patch("/{version_id}")
async def update_takeoff_version(
    project_id: str, version_id: str, req: VersionUpdateRequest, db: AsyncSession = Depends(get_db)
):
    await _project_version(db, project_id, version_id)
    version = await version_store.update_draft(
        db,
        version_id,
        snapshot_changes=req.snapshot,
        boq_lines=req.boq_lines,
        label=req.label,
        description=req.description,
    )
    return version_store.version_to_dict(version)


@router.patch("/{version_id}/status")
async def change_takeoff_version_status(
    project_id: str, version_id: str, req: StatusChangeRequest, db: AsyncSession = Depends(get_db)
):
    await _project_version(db, project_id, version_id)
    version = await version_store.transition_version(
        db, version_id, req.action, actor=req.user_id, reason=req.reason
    )
    return version_store.version_to_dict(version, include_snapshot=False)


@router.post("/{version_id}/derive", status_code=201)
async def derive_takeoff_version(
    project_id: str, version_id: str, req: DeriveRequest, db: AsyncSession = Depends(get_db)
):
    await _project_version(db, project_id, version_id)
    version = await version_store.derive_version(
        db, version_id, label=req.label, created_by=req.user_id
    )
    return version_store.version_to_dict(version)
