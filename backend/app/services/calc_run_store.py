"""
Calculation Run Store — one pass of raw takeoff lines through BOQ aggregation.

A run is inserted as `running`, then moved exactly once to `completed` (BOQ
lines, summary and any per-line validation issues stored) or `failed` (error
message stored). Terminal runs are append-only history: nothing updates them
again, and versions copy their BOQ rather than referencing it.
"""
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.orm_models import CalculationRun
from app.services import boq_engine
from app.services.boq_engine import RawQuantityLine
from app.services.errors import InvalidTransition, NotFound, ValidationError, ValidationIssue
from app.services.perf_monitor import perf_tracker, timed_async
from app.services.version_store import ensure_project

logger = logging.getLogger("estimator-calcruns")

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL = (COMPLETED, FAILED)


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:12]}"


def run_to_dict(run: CalculationRun, include_lines: bool = True) -> Dict[str, Any]:
    data = {
        "id": run.id,
        "run_id": run.run_id,
        "project_id": run.project_id,
        "takeoff_version_id": run.takeoff_version_id,
        "status": run.status,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        "summary": run.summary,
        "validation_errors": run.validation_errors,
        "error_message": run.error_message,
    }
    if include_lines:
        data["raw_lines"] = run.raw_lines
        data["boq_lines"] = run.boq_lines
    return data


def _finish(run: CalculationRun, status: str) -> None:
    """Single transition out of `running`; a terminal run is never touched again."""
    if run.status in TERMINAL:
        raise InvalidTransition("calculation run", run.status, status)
    run.status = status
    run.completed_at = datetime.now(timezone.utc)


def _coerce_lines(raw_lines: Iterable[Union[RawQuantityLine, Dict[str, Any]]]) -> List[RawQuantityLine]:
    return [
        line if isinstance(line, RawQuantityLine) else RawQuantityLine.from_dict(line)
        for line in raw_lines
    ]


@timed_async("calculation_run")
async def execute_calculation_run(
    db: AsyncSession,
    project_id: str,
    raw_lines: Iterable[Union[RawQuantityLine, Dict[str, Any]]],
    run_id: Optional[str] = None,
    takeoff_version_id: Optional[str] = None,
    catalog: Optional[Dict[str, Dict[str, Any]]] = None,
) -> CalculationRun:
    """
    Record and execute one aggregation pass for a project.

    Per-line problems (unit mismatch, negative quantity, unresolvable pay item)
    land in `validation_errors` and the run still completes with the remaining
    lines. A missing project id is fatal and nothing is recorded. An unexpected
    failure during aggregation marks the run `failed` and returns it.
    """
    await ensure_project(db, project_id)
    run_id = run_id or new_run_id()
    existing = await db.execute(select(CalculationRun.id).where(CalculationRun.run_id == run_id))
    if existing.scalar_one_or_none() is not None:
        raise ValidationError(
            f"Calculation run {run_id} already exists",
            [ValidationIssue(code="duplicate_run_id", message="run ids are never reused", ref=run_id)],
        )

    lines = _coerce_lines(raw_lines)
    run = CalculationRun(
        run_id=run_id,
        project_id=project_id,
        takeoff_version_id=takeoff_version_id,
        status=RUNNING,
        started_at=datetime.now(timezone.utc),
        raw_lines=[line.to_dict() for line in lines],
    )
    db.add(run)
    await db.commit()
    logger.info(
        f"Calculation run {run_id} started with {len(lines)} raw line(s)",
        extra={"project_id": project_id, "run_id": run_id},
    )

    start = time.perf_counter()
    try:
        result = boq_engine.aggregate(lines, catalog=catalog)
        summary = boq_engine.summarize(lines, result.boq_lines)
    except Exception as exc:
        _finish(run, FAILED)
        run.error_message = f"{type(exc).__name__}: {exc}"
        await db.commit()
        perf_tracker.record_run_failed()
        logger.exception(
            f"Calculation run {run_id} failed",
            extra={"project_id": project_id, "run_id": run_id},
        )
        return run

    _finish(run, COMPLETED)
    run.boq_lines = [b.to_dict() for b in result.boq_lines]
    run.summary = summary
    run.validation_errors = [issue.to_dict() for issue in result.validation_errors]
    await db.commit()

    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    perf_tracker.record_run_complete(duration_ms, len(lines))
    logger.info(
        f"Calculation run {run_id} completed: {len(result.boq_lines)} BOQ line(s), "
        f"{len(result.validation_errors)} validation issue(s)",
        extra={"project_id": project_id, "run_id": run_id, "duration_ms": duration_ms},
    )
    return run


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_run(db: AsyncSession, run_id: str) -> CalculationRun:
    """Look a run up by its public run id or its row id."""
    result = await db.execute(
        select(CalculationRun).where(
            or_(CalculationRun.run_id == run_id, CalculationRun.id == run_id)
        )
    )
    run = result.scalars().first()
    if run is None:
        raise NotFound("CalculationRun", run_id)
    return run


async def get_latest_run(db: AsyncSession, project_id: str) -> Optional[CalculationRun]:
    result = await db.execute(
        select(CalculationRun)
        .where(CalculationRun.project_id == project_id)
        .order_by(CalculationRun.started_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_runs(
    db: AsyncSession, project_id: str, status: Optional[str] = None, limit: int = 50
) -> List[CalculationRun]:
    query = select(CalculationRun).where(CalculationRun.project_id == project_id)
    if status:
        query = query.where(CalculationRun.status == status)
    result = await db.execute(query.order_by(CalculationRun.started_at.desc()).limit(limit))
    return list(result.scalars().all())
