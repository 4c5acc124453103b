"""
test_calc_run_store.py — Calculation runs against an in-memory database.

A run moves once from running to completed (BOQ + summary + per-line issues)
or failed (error message), and is never touched again.
"""

import pytest

from app.services import boq_engine, calc_run_store
from app.services.errors import InvalidTransition, NotFound, ValidationError
from app.services.perf_monitor import perf_tracker


@pytest.fixture(autouse=True)
def _fresh_metrics():
    perf_tracker.reset()
    yield
    perf_tracker.reset()


class TestExecute:

    async def test_completed_run(self, db_session, project_id, raw_lines):
        run = await calc_run_store.execute_calculation_run(db_session, project_id, raw_lines)
        assert run.status == "completed"
        assert run.run_id.startswith("run_")
        assert run.completed_at is not None
        assert len(run.raw_lines) == 7
        assert [b["pay_item_number"] for b in run.boq_lines] == ["804 (1)A", "900 (1)C", "902 (1)A2", "903 (1)"]
        assert run.summary["total_concrete"] == pytest.approx(2.45)
        assert run.validation_errors == []
        assert run.error_message is None

    async def test_partial_results_with_issues(self, db_session, project_id, raw_lines):
        """A unit mismatch drops its group; the rest of the run still completes."""
        lines = raw_lines + [{
            "id": "rq-050", "source_element_id": "B-1", "trade": "Rebar",
            "resource_key": "902 (1) a2", "quantity": 1.0, "unit": "m",
        }]
        run = await calc_run_store.execute_calculation_run(db_session, project_id, lines)
        assert run.status == "completed"
        assert [e["code"] for e in run.validation_errors] == ["unit_mismatch"]
        assert "902 (1)A2" not in [b["pay_item_number"] for b in run.boq_lines]
        assert len(run.boq_lines) == 3

    async def test_explicit_run_id(self, db_session, project_id, raw_lines):
        run = await calc_run_store.execute_calculation_run(db_session, project_id, raw_lines, run_id="run_fixed")
        assert run.run_id == "run_fixed"
        with pytest.raises(ValidationError):
            await calc_run_store.execute_calculation_run(db_session, project_id, raw_lines, run_id="run_fixed")

    async def test_missing_project_id_is_fatal(self, db_session, raw_lines):
        with pytest.raises(ValidationError):
            await calc_run_store.execute_calculation_run(db_session, "", raw_lines)
        assert await calc_run_store.list_runs(db_session, "") == []

    async def test_unknown_project(self, db_session, raw_lines):
        with pytest.raises(NotFound):
            await calc_run_store.execute_calculation_run(db_session, "missing", raw_lines)

    async def test_failure_marks_run_failed(self, db_session, project_id, raw_lines, monkeypatch):
        def explode(lines, catalog=None):
            raise RuntimeError("geometry cache unavailable")

        monkeypatch.setattr(boq_engine, "aggregate", explode)
        run = await calc_run_store.execute_calculation_run(db_session, project_id, raw_lines)
        assert run.status == "failed"
        assert "geometry cache unavailable" in run.error_message
        assert run.boq_lines == []
        assert perf_tracker.get_metrics()["runs_failed"] == 1

    async def test_metrics_recorded(self, db_session, project_id, raw_lines):
        await calc_run_store.execute_calculation_run(db_session, project_id, raw_lines)
        metrics = perf_tracker.get_metrics()
        assert metrics["runs_completed"] == 1
        assert metrics["raw_lines_processed"] == 7
        assert "aggregate" in metrics["stage_avg_durations_ms"]
        assert "calculation_run" in metrics["stage_avg_durations_ms"]


class TestTerminal:

    async def test_terminal_run_cannot_finish_again(self, db_session, project_id, raw_lines):
        run = await calc_run_store.execute_calculation_run(db_session, project_id, raw_lines)
        with pytest.raises(InvalidTransition):
            calc_run_store._finish(run, calc_run_store.FAILED)
        assert run.status == "completed"


class TestReads:

    async def test_get_by_run_id_or_row_id(self, db_session, project_id, raw_lines):
        run = await calc_run_store.execute_calculation_run(db_session, project_id, raw_lines)
        assert (await calc_run_store.get_run(db_session, run.run_id)).id == run.id
        assert (await calc_run_store.get_run(db_session, run.id)).run_id == run.run_id

    async def test_get_missing(self, db_session):
        with pytest.raises(NotFound):
            await calc_run_store.get_run(db_session, "run_000000000000")

    async def test_latest_and_list(self, db_session, project_id, raw_lines):
        assert await calc_run_store.get_latest_run(db_session, project_id) is None
        first = await calc_run_store.execute_calculation_run(db_session, project_id, raw_lines)
        second = await calc_run_store.execute_calculation_run(db_session, project_id, raw_lines[:2])
        latest = await calc_run_store.get_latest_run(db_session, project_id)
        assert latest.run_id == second.run_id
        runs = await calc_run_store.list_runs(db_session, project_id)
        assert [r.run_id for r in runs] == [second.run_id, first.run_id]
        assert await calc_run_store.list_runs(db_session, project_id, status="failed") == []
