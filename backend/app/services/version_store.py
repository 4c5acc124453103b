"""
Takeoff Version Store — numbered, frozen snapshots of a project's design state.

Version numbers are max+1 per project and guarded by the
(project_id, version_number) unique constraint. A collision rolls the
transaction back and retries with a freshly read number (VERSION_NUMBER_RETRIES
times) before surfacing DuplicateVersionNumber, so concurrent creators across
processes never share a number.
"""
import copy
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app import config
from app.models.design_schema import SNAPSHOT_FIELDS, DesignSnapshot, snapshot_to_columns
from app.models.orm_models import Project, TakeoffVersion, approval_fields
from app.services import approval_workflow as wf
from app.services.errors import DuplicateVersionNumber, NotFound, ValidationError, ValidationIssue

logger = logging.getLogger("estimator-versions")

VERSION_TYPES = ("preliminary", "detailed", "revised", "final", "as-built")

# BOQ trade tag → TakeoffVersion total column
_TOTAL_COLUMNS: Dict[str, str] = {
    "trade:Concrete": "total_concrete_m3",
    "trade:Rebar": "total_rebar_kg",
    "trade:Formwork": "total_formwork_m2",
}


# ---------------------------------------------------------------------------
# Numbering
# ---------------------------------------------------------------------------

async def next_version_number(db: AsyncSession, project_id: str) -> int:
    result = await db.execute(
        select(func.max(TakeoffVersion.version_number)).where(
            TakeoffVersion.project_id == project_id
        )
    )
    return (result.scalar() or 0) + 1


async def insert_numbered(
    db: AsyncSession,
    project_id: str,
    next_number: Callable[[], Awaitable[Any]],
    build: Callable[[Any], Any],
) -> Any:
    """
    Read the next number, insert the row built for it and commit. On a
    uniqueness collision roll back and try again with a fresh number.
    """
    attempts = config.VERSION_NUMBER_RETRIES + 1
    number = None
    for attempt in range(1, attempts + 1):
        number = await next_number()
        record = build(number)
        db.add(record)
        try:
            await db.commit()
            return record
        except IntegrityError:
            await db.rollback()
            logger.warning(
                f"Number {number} collided for project {project_id} "
                f"(attempt {attempt}/{attempts})",
                extra={"project_id": project_id},
            )
    raise DuplicateVersionNumber(project_id, number)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def ensure_project(db: AsyncSession, project_id: str) -> Project:
    if not project_id:
        raise ValidationError(
            "project_id is required",
            [ValidationIssue(code="missing_project_id", message="project_id is empty")],
        )
    project = await db.get(Project, project_id)
    if project is None:
        raise NotFound("Project", project_id)
    return project


def totals_from_boq(boq_lines: List[Dict[str, Any]]) -> Dict[str, Any]:
    totals = {col: 0.0 for col in _TOTAL_COLUMNS.values()}
    for line in boq_lines:
        for tag in line.get("tags") or []:
            col = _TOTAL_COLUMNS.get(tag)
            if col:
                totals[col] += float(line.get("quantity") or 0.0)
                break
    totals = {k: round(v, 3) for k, v in totals.items()}
    totals["boq_line_count"] = len(boq_lines)
    return totals


def change_basis(version: TakeoffVersion) -> Dict[str, Any]:
    """Plain copy of what compute_changes_summary compares."""
    return {
        "element_instances": copy.deepcopy(version.element_instances or []),
        "total_concrete_m3": version.total_concrete_m3 or 0.0,
        "total_rebar_kg": version.total_rebar_kg or 0.0,
        "total_formwork_m2": version.total_formwork_m2 or 0.0,
    }


def compute_changes_summary(parent: Dict[str, Any], child: Dict[str, Any]) -> Dict[str, Any]:
    """Element adds/removes/edits and quantity deltas of `child` against `parent`."""
    before = {i["id"]: i for i in parent["element_instances"]}
    after = {i["id"]: i for i in child["element_instances"]}
    return {
        "elements_added": len(after.keys() - before.keys()),
        "elements_removed": len(before.keys() - after.keys()),
        "elements_modified": sum(1 for k in after.keys() & before.keys() if after[k] != before[k]),
        "quantity_delta_concrete": round(child["total_concrete_m3"] - parent["total_concrete_m3"], 3),
        "quantity_delta_rebar": round(child["total_rebar_kg"] - parent["total_rebar_kg"], 3),
        "quantity_delta_formwork": round(child["total_formwork_m2"] - parent["total_formwork_m2"], 3),
    }


def validate_snapshot(data: Dict[str, Any]) -> DesignSnapshot:
    """DesignSnapshot from raw category data, with shape errors as ValidationError."""
    try:
        return DesignSnapshot.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Invalid design snapshot",
            [
                ValidationIssue(
                    code="invalid_snapshot",
                    message=err["msg"],
                    ref=".".join(str(p) for p in err["loc"]),
                )
                for err in exc.errors()
            ],
        )


def _validate_type(version_type: str) -> None:
    if version_type not in VERSION_TYPES:
        raise ValidationError(
            f"Unknown version type '{version_type}'",
            [ValidationIssue(code="invalid_version_type", message=f"expected one of {VERSION_TYPES}",
                             ref=version_type)],
        )


def version_to_dict(version: TakeoffVersion, include_snapshot: bool = True) -> Dict[str, Any]:
    data = {
        "id": version.id,
        "project_id": version.project_id,
        "version_number": version.version_number,
        "label": version.label,
        "version_type": version.version_type,
        "description": version.description,
        **approval_fields(version),
        "calc_run_id": version.calc_run_id,
        "total_concrete_m3": version.total_concrete_m3,
        "total_rebar_kg": version.total_rebar_kg,
        "total_formwork_m2": version.total_formwork_m2,
        "boq_line_count": version.boq_line_count,
        "parent_version_id": version.parent_version_id,
        "changes_summary": version.changes_summary,
    }
    if include_snapshot:
        data.update({name: getattr(version, name) for name in SNAPSHOT_FIELDS})
        data["boq_lines"] = version.boq_lines
    return data


# ---------------------------------------------------------------------------
# Create / derive / edit
# ---------------------------------------------------------------------------

async def create_version(
    db: AsyncSession,
    project_id: str,
    label: str,
    version_type: str = "preliminary",
    description: Optional[str] = None,
    snapshot: Optional[DesignSnapshot] = None,
    boq_lines: Optional[List[Dict[str, Any]]] = None,
    calc_run_id: Optional[str] = None,
    created_by: Optional[str] = None,
) -> TakeoffVersion:
    """
    Create a draft version with the next number for the project.

    When `calc_run_id` is given the BOQ is deep-copied from that completed run.
    """
    await ensure_project(db, project_id)
    _validate_type(version_type)
    columns = snapshot_to_columns(snapshot or DesignSnapshot())

    if calc_run_id:
        from app.services.calc_run_store import get_run
        run = await get_run(db, calc_run_id)
        if run.project_id != project_id or run.status != "completed":
            raise ValidationError(
                f"Calculation run {calc_run_id} is not a completed run of project {project_id}",
                [ValidationIssue(code="unusable_calc_run", message=run.status, ref=calc_run_id)],
            )
        boq_lines = run.boq_lines
        calc_run_id = run.run_id
    boq_copy = copy.deepcopy(boq_lines or [])
    totals = totals_from_boq(boq_copy)

    def build(number: int) -> TakeoffVersion:
        return TakeoffVersion(
            project_id=project_id,
            version_number=number,
            label=label,
            version_type=version_type,
            description=description,
            status=wf.DRAFT,
            created_by=created_by,
            calc_run_id=calc_run_id,
            boq_lines=boq_copy,
            **totals,
            **copy.deepcopy(columns),
        )

    version = await insert_numbered(
        db, project_id, lambda: next_version_number(db, project_id), build
    )
    logger.info(
        f"Created takeoff version {version.version_number} for project {project_id}",
        extra={"project_id": project_id, "version_number": version.version_number},
    )
    return version


async def derive_version(
    db: AsyncSession,
    source_version_id: str,
    label: Optional[str] = None,
    created_by: Optional[str] = None,
) -> TakeoffVersion:
    """
    New draft copied from any existing version (the only way to continue a
    rejected one). The source is left untouched.
    """
    source = await get_version(db, source_version_id)
    # Plain copies only: a numbering retry rolls back and expires `source`
    project_id = source.project_id
    parent = {
        "id": source.id,
        "label": source.label,
        "description": source.description,
        "calc_run_id": source.calc_run_id,
        "version_number": source.version_number,
        "status": source.status,
    }
    basis = change_basis(source)
    columns = {name: copy.deepcopy(getattr(source, name)) for name in SNAPSHOT_FIELDS}
    boq_copy = copy.deepcopy(source.boq_lines or [])
    totals = totals_from_boq(boq_copy)

    def build(number: int) -> TakeoffVersion:
        child = TakeoffVersion(
            project_id=project_id,
            version_number=number,
            label=label or f"{parent['label']} (rev {number})",
            version_type="revised",
            description=parent["description"],
            status=wf.DRAFT,
            created_by=created_by,
            calc_run_id=parent["calc_run_id"],
            boq_lines=copy.deepcopy(boq_copy),
            parent_version_id=parent["id"],
            **totals,
            **copy.deepcopy(columns),
        )
        child.changes_summary = compute_changes_summary(basis, change_basis(child))
        return child

    version = await insert_numbered(
        db, project_id, lambda: next_version_number(db, project_id), build
    )
    logger.info(
        f"Derived takeoff version {version.version_number} from {parent['version_number']} "
        f"({parent['status']})",
        extra={"project_id": project_id, "version_number": version.version_number},
    )
    return version


async def update_draft(
    db: AsyncSession,
    version_id: str,
    snapshot_changes: Optional[Dict[str, Any]] = None,
    boq_lines: Optional[List[Dict[str, Any]]] = None,
    label: Optional[str] = None,
    description: Optional[str] = None,
) -> TakeoffVersion:
    """Edit snapshot categories / BOQ of a draft; VersionLocked otherwise."""
    version = await get_version(db, version_id)
    wf.ensure_editable(version, "takeoff version")

    if snapshot_changes:
        unknown = set(snapshot_changes) - set(SNAPSHOT_FIELDS)
        if unknown:
            raise ValidationError(
                "Unknown snapshot categories",
                [ValidationIssue(code="unknown_category", message=name, ref=name) for name in sorted(unknown)],
            )
        validated = validate_snapshot(snapshot_changes).model_dump(
            mode="json", include=set(snapshot_changes)
        )
        for name, value in validated.items():
            setattr(version, name, value)
    if boq_lines is not None:
        version.boq_lines = copy.deepcopy(boq_lines)
        for col, value in totals_from_boq(version.boq_lines).items():
            setattr(version, col, value)
    if label is not None:
        version.label = label
    if description is not None:
        version.description = description

    if version.parent_version_id:
        parent = await db.get(TakeoffVersion, version.parent_version_id)
        if parent is not None:
            version.changes_summary = compute_changes_summary(
                change_basis(parent), change_basis(version)
            )

    await db.commit()
    return version


# ---------------------------------------------------------------------------
# Approval workflow
# ---------------------------------------------------------------------------

async def transition_version(
    db: AsyncSession,
    version_id: str,
    action: str,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
) -> TakeoffVersion:
    """
    submit / approve / reject / supersede. Approving also supersedes every
    older approved version of the project in the same transaction.
    """
    version = await get_version(db, version_id)
    wf.apply_transition(version, action, actor=actor, reason=reason, entity="takeoff version")

    if action == "approve":
        result = await db.execute(
            select(TakeoffVersion).where(
                TakeoffVersion.project_id == version.project_id,
                TakeoffVersion.status == wf.APPROVED,
                TakeoffVersion.version_number < version.version_number,
            )
        )
        for older in result.scalars().all():
            wf.apply_transition(older, "supersede", actor=actor, entity="takeoff version")

    await db.commit()
    logger.info(
        f"Takeoff version {version.version_number} → {version.status}",
        extra={"project_id": version.project_id, "version_number": version.version_number},
    )
    return version


async def submit_version(db: AsyncSession, version_id: str, actor: Optional[str] = None) -> TakeoffVersion:
    return await transition_version(db, version_id, "submit", actor=actor)


async def approve_version(db: AsyncSession, version_id: str, actor: Optional[str] = None) -> TakeoffVersion:
    return await transition_version(db, version_id, "approve", actor=actor)


async def reject_version(
    db: AsyncSession, version_id: str, reason: str, actor: Optional[str] = None
) -> TakeoffVersion:
    return await transition_version(db, version_id, "reject", actor=actor, reason=reason)


async def supersede_version(db: AsyncSession, version_id: str) -> TakeoffVersion:
    return await transition_version(db, version_id, "supersede")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_version(db: AsyncSession, version_id: str) -> TakeoffVersion:
    version = await db.get(TakeoffVersion, version_id)
    if version is None:
        raise NotFound("TakeoffVersion", version_id)
    return version


async def get_active_version(db: AsyncSession, project_id: str) -> Optional[TakeoffVersion]:
    """Highest-numbered approved version, or None when nothing is approved yet."""
    result = await db.execute(
        select(TakeoffVersion)
        .where(TakeoffVersion.project_id == project_id, TakeoffVersion.status == wf.APPROVED)
        .order_by(TakeoffVersion.version_number.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_versions(
    db: AsyncSession, project_id: str, include_superseded: bool = False
) -> List[TakeoffVersion]:
    query = select(TakeoffVersion).where(TakeoffVersion.project_id == project_id)
    if not include_superseded:
        query = query.where(TakeoffVersion.status != wf.SUPERSEDED)
    result = await db.execute(query.order_by(TakeoffVersion.version_number.desc()))
    return list(result.scalars().all())
