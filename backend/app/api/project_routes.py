"""
Project Routes — the parent row every run, version and estimate hangs off.

POST /api/projects       — create a project
GET  /api/projects/{id}  — project with its active version / estimate ids
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_db
from app.models.orm_models import Project
from app.services.estimate_store import get_active_estimate
from app.services.version_store import ensure_project, get_active_version

router = APIRouter(prefix="/api/projects", tags=["Projects"])
logger = logging.getLogger("estimator-api.projects")


class ProjectCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    location: Optional[str] = None
    district: Optional[str] = None


def _project_dict(project: Project) -> dict:
    return {
        "id": project.id,
        "name": project.name,
        "location": project.location,
        "district": project.district,
        "created_at": project.created_at.isoformat() if project.created_at else None,
    }


@router.post("", status_code=201)
async def create_project(req: ProjectCreateRequest, db: AsyncSession = Depends(get_db)):
    project = Project(name=req.name, location=req.location, district=req.district)
    db.add(project)
    await db.commit()
    logger.info(f"Created project {project.name}", extra={"project_id": project.id})
    return _project_dict(project)


@router.get("/{project_id}")
async def get_project(project_id: str, db: AsyncSession = Depends(get_db)):
    project = await ensure_project(db, project_id)
    version = await get_active_version(db, project_id)
    estimate = await get_active_estimate(db, project_id)
    return {
        **_project_dict(project),
        "active_takeoff_version_id": version.id if version else None,
        "active_cost_estimate_id": estimate.id if estimate else None,
    }
