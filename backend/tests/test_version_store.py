"""
test_version_store.py — Takeoff version store against an in-memory database.

Tests cover:
  - max+1 numbering, no gaps or repeats, and the collision retry path
  - Draft-only edits (VersionLocked afterwards)
  - Approval supersedes older approved versions; active-version lookup
  - Deriving a new draft from a rejected version, with changes summary
  - Creating a version from a completed calculation run (BOQ deep copy)
"""

import asyncio

import pytest

from app.models.design_schema import DesignSnapshot
from app.services import version_store
from app.services.calc_run_store import execute_calculation_run
from app.services.errors import (
    DuplicateVersionNumber,
    InvalidTransition,
    NotFound,
    ValidationError,
    VersionLocked,
)

_SNAPSHOT = {
    "grid": {"x_lines": [{"label": "1", "offset": 0}, {"label": "2", "offset": 6}],
             "y_lines": [{"label": "A", "offset": 0}, {"label": "B", "offset": 4}]},
    "levels": [{"label": "GF", "elevation": 0}, {"label": "2F", "elevation": 3.2}],
    "element_templates": [{"id": "t-col", "type": "column", "name": "C1 400x400",
                           "properties": {"width": 0.4, "depth": 0.4}}],
    "element_instances": [
        {"id": "e-1", "template_id": "t-col", "placement": {"grid_ref": ["1", "A"], "level_id": "GF"}},
        {"id": "e-2", "template_id": "t-col", "placement": {"grid_ref": ["2", "A"], "level_id": "GF"}},
    ],
}

_BOQ = [
    {"id": "boq_900__1_C", "pay_item_number": "900 (1)C", "description": "Concrete", "unit": "Cubic Meter",
     "quantity": 2.45, "part": "PART D", "part_name": "REINFORCED CONCRETE / BUILDINGS",
     "subcategory": "Concrete", "source_raw_line_ids": ["rq-001"], "tags": ["dpwh:900 (1)C", "trade:Concrete"]},
    {"id": "boq_902__1_A2", "pay_item_number": "902 (1)A2", "description": "Rebar", "unit": "Kilogram",
     "quantity": 125.5, "part": "PART D", "part_name": "REINFORCED CONCRETE / BUILDINGS",
     "subcategory": "Reinforcing Steel", "source_raw_line_ids": ["rq-004"], "tags": ["trade:Rebar"]},
]


async def _create(db, project_id, label="Preliminary takeoff", **kwargs):
    return await version_store.create_version(db, project_id, label, **kwargs)


async def _approve(db, version_id):
    await version_store.submit_version(db, version_id, actor="estimator")
    return await version_store.approve_version(db, version_id, actor="chief")


# ===========================================================================
# Class 1: Numbering
# ===========================================================================

class TestNumbering:

    async def test_first_version_is_one_and_draft(self, db_session, project_id):
        version = await _create(db_session, project_id)
        assert version.version_number == 1
        assert version.status == "draft"

    async def test_fourth_after_three(self, db_session, project_id):
        """A project already at version 3 gets 4, never 3 or 5."""
        for _ in range(3):
            await _create(db_session, project_id)
        version = await _create(db_session, project_id)
        assert version.version_number == 4

    async def test_sequence_has_no_gaps(self, db_session, project_id):
        numbers = [(await _create(db_session, project_id)).version_number for _ in range(5)]
        assert numbers == [1, 2, 3, 4, 5]

    async def test_numbers_are_per_project(self, db_session, project_id):
        from app.models.orm_models import Project
        other = Project(name="Bridge Approach")
        db_session.add(other)
        await db_session.commit()
        other_id = other.id
        await _create(db_session, project_id)
        await _create(db_session, project_id)
        assert (await _create(db_session, other_id)).version_number == 1

    async def test_collision_retries_with_fresh_number(self, db_session, project_id, monkeypatch):
        """A stale read of 1 collides with the existing row; the retry reads 2."""
        await _create(db_session, project_id)
        real = version_store.next_version_number
        calls = []

        async def stale_then_real(db, pid):
            calls.append(pid)
            return 1 if len(calls) == 1 else await real(db, pid)

        monkeypatch.setattr(version_store, "next_version_number", stale_then_real)
        version = await _create(db_session, project_id)
        assert version.version_number == 2
        assert len(calls) == 2

    async def test_collision_surfaces_after_retry(self, db_session, project_id, monkeypatch):
        await _create(db_session, project_id)

        async def always_one(db, pid):
            return 1

        monkeypatch.setattr(version_store, "next_version_number", always_one)
        with pytest.raises(DuplicateVersionNumber) as exc:
            await _create(db_session, project_id)
        assert exc.value.number == 1

        monkeypatch.undo()
        assert [v.version_number for v in await version_store.list_versions(db_session, project_id)] == [1]

    async def test_concurrent_sessions_get_distinct_numbers(self, tmp_path):
        """Two creators on separate connections to one database file end up with 1 and 2."""
        from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
        from app.db import Base
        from app.models.orm_models import Project

        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'versions.db'}",
            connect_args={"timeout": 30},
        )
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with factory() as db:
                project = Project(name="Covered Court")
                db.add(project)
                await db.commit()
                pid = project.id

            async def create(label):
                async with factory() as db:
                    version = await version_store.create_version(db, pid, label)
                    return version.version_number

            numbers = await asyncio.gather(create("Structural"), create("Architectural"))
        finally:
            await engine.dispose()
        assert set(numbers) == {1, 2}


# ===========================================================================
# Class 2: Create / validation
# ===========================================================================

class TestCreate:

    async def test_snapshot_and_totals_stored(self, db_session, project_id):
        version = await _create(
            db_session, project_id,
            snapshot=DesignSnapshot.model_validate(_SNAPSHOT), boq_lines=_BOQ, created_by="estimator",
        )
        assert len(version.element_instances) == 2
        assert version.levels[1]["elevation"] == 3.2
        assert version.total_concrete_m3 == pytest.approx(2.45)
        assert version.total_rebar_kg == pytest.approx(125.5)
        assert version.boq_line_count == 2
        assert version.created_by == "estimator"

    async def test_boq_is_copied(self, db_session, project_id):
        lines = [dict(l) for l in _BOQ]
        version = await _create(db_session, project_id, boq_lines=lines)
        lines[0]["quantity"] = 999.0
        assert version.boq_lines[0]["quantity"] == 2.45

    async def test_unknown_project(self, db_session):
        with pytest.raises(NotFound):
            await _create(db_session, "no-such-project")

    async def test_missing_project_id_is_validation_error(self, db_session):
        with pytest.raises(ValidationError):
            await _create(db_session, "")

    async def test_unknown_type(self, db_session, project_id):
        with pytest.raises(ValidationError):
            await _create(db_session, project_id, version_type="sketch")

    async def test_from_completed_calc_run(self, db_session, project_id, raw_lines):
        run = await execute_calculation_run(db_session, project_id, raw_lines)
        version = await _create(db_session, project_id, calc_run_id=run.run_id)
        assert version.calc_run_id == run.run_id
        assert version.boq_line_count == 4
        assert version.total_concrete_m3 == pytest.approx(2.45)
        assert version.boq_lines == run.boq_lines
        assert version.boq_lines is not run.boq_lines

    async def test_unknown_calc_run(self, db_session, project_id):
        with pytest.raises(NotFound):
            await _create(db_session, project_id, calc_run_id="run_missing")


# ===========================================================================
# Class 3: Draft edits
# ===========================================================================

class TestUpdateDraft:

    async def test_edit_while_draft(self, db_session, project_id):
        version = await _create(db_session, project_id)
        updated = await version_store.update_draft(
            db_session, version.id,
            snapshot_changes={"levels": _SNAPSHOT["levels"]}, boq_lines=_BOQ, label="Rev A",
        )
        assert updated.label == "Rev A"
        assert len(updated.levels) == 2
        assert updated.total_rebar_kg == pytest.approx(125.5)

    async def test_locked_after_submit(self, db_session, project_id):
        version = await _create(db_session, project_id)
        await version_store.submit_version(db_session, version.id, actor="estimator")
        with pytest.raises(VersionLocked):
            await version_store.update_draft(db_session, version.id, label="late edit")
        assert version.label == "Preliminary takeoff"

    async def test_invalid_category_shape(self, db_session, project_id):
        version = await _create(db_session, project_id)
        with pytest.raises(ValidationError) as exc:
            await version_store.update_draft(
                db_session, version.id, snapshot_changes={"levels": [{"label": "GF"}]}
            )
        assert exc.value.issues[0].code == "invalid_snapshot"

    async def test_unknown_category(self, db_session, project_id):
        version = await _create(db_session, project_id)
        with pytest.raises(ValidationError) as exc:
            await version_store.update_draft(db_session, version.id, snapshot_changes={"furniture": []})
        assert exc.value.issues[0].code == "unknown_category"


# ===========================================================================
# Class 4: Workflow and active version
# ===========================================================================

class TestWorkflow:

    async def test_no_active_version_is_none(self, db_session, project_id):
        await _create(db_session, project_id)
        assert await version_store.get_active_version(db_session, project_id) is None

    async def test_approve_supersedes_older(self, db_session, project_id):
        v1 = await _create(db_session, project_id)
        v2 = await _create(db_session, project_id)
        await _approve(db_session, v1.id)
        await _approve(db_session, v2.id)

        assert v1.status == "superseded"
        assert v1.superseded_at is not None
        active = await version_store.get_active_version(db_session, project_id)
        assert active.id == v2.id

        visible = await version_store.list_versions(db_session, project_id)
        assert [v.version_number for v in visible] == [2]
        everything = await version_store.list_versions(db_session, project_id, include_superseded=True)
        assert [v.version_number for v in everything] == [2, 1]

    async def test_manual_supersede_clears_active(self, db_session, project_id):
        version = await _create(db_session, project_id)
        await _approve(db_session, version.id)
        await version_store.supersede_version(db_session, version.id)
        assert version.status == "superseded"
        assert await version_store.get_active_version(db_session, project_id) is None
        with pytest.raises(InvalidTransition):
            await version_store.submit_version(db_session, version.id)

    async def test_approve_twice_raises(self, db_session, project_id):
        version = await _create(db_session, project_id)
        await _approve(db_session, version.id)
        with pytest.raises(InvalidTransition):
            await version_store.approve_version(db_session, version.id, actor="chief")
        assert version.status == "approved"

    async def test_reject_records_reason(self, db_session, project_id):
        version = await _create(db_session, project_id)
        await version_store.submit_version(db_session, version.id, actor="estimator")
        rejected = await version_store.reject_version(db_session, version.id, "Wrong column sizes", actor="chief")
        assert rejected.status == "rejected"
        assert rejected.rejection_reason == "Wrong column sizes"
        with pytest.raises(InvalidTransition):
            await version_store.submit_version(db_session, version.id)

    async def test_unknown_version(self, db_session):
        with pytest.raises(NotFound):
            await version_store.approve_version(db_session, "missing")


# ===========================================================================
# Class 5: Derive
# ===========================================================================

class TestDerive:

    async def test_derive_from_rejected(self, db_session, project_id):
        source = await _create(
            db_session, project_id,
            snapshot=DesignSnapshot.model_validate(_SNAPSHOT), boq_lines=_BOQ,
        )
        await version_store.submit_version(db_session, source.id)
        await version_store.reject_version(db_session, source.id, "Add beam B-3")

        child = await version_store.derive_version(db_session, source.id, created_by="estimator")
        assert child.version_number == 2
        assert child.status == "draft"
        assert child.parent_version_id == source.id
        assert child.version_type == "revised"
        assert child.element_instances == source.element_instances
        assert child.changes_summary["elements_added"] == 0
        assert source.status == "rejected"

    async def test_changes_summary_tracks_edits(self, db_session, project_id):
        source = await _create(
            db_session, project_id,
            snapshot=DesignSnapshot.model_validate(_SNAPSHOT), boq_lines=_BOQ,
        )
        child = await version_store.derive_version(db_session, source.id)
        instances = [
            _SNAPSHOT["element_instances"][0],
            {"id": "e-3", "template_id": "t-col", "placement": {"grid_ref": ["2", "B"], "level_id": "GF"}},
        ]
        boq = [dict(_BOQ[0], quantity=3.0), _BOQ[1]]
        child = await version_store.update_draft(
            db_session, child.id, snapshot_changes={"element_instances": instances}, boq_lines=boq
        )
        summary = child.changes_summary
        assert summary["elements_added"] == 1
        assert summary["elements_removed"] == 1
        assert summary["elements_modified"] == 0
        assert summary["quantity_delta_concrete"] == pytest.approx(0.55)
        assert summary["quantity_delta_rebar"] == 0

    async def test_derive_retries_on_collision(self, db_session, project_id, monkeypatch):
        source = await _create(db_session, project_id, boq_lines=_BOQ)
        source_id = source.id
        real = version_store.next_version_number
        calls = []

        async def stale_then_real(db, pid):
            calls.append(pid)
            return 1 if len(calls) == 1 else await real(db, pid)

        monkeypatch.setattr(version_store, "next_version_number", stale_then_real)
        child = await version_store.derive_version(db_session, source_id, label="Rev B")
        assert child.version_number == 2
        assert child.parent_version_id == source_id
        assert child.label == "Rev B"
