"""
test_import_safety.py — Import and layering checks.

Verifies that:
  1. Every app module imports without ImportError or circular import failures
     (module import only, no DB connection is opened).
  2. The pure engines (classification, BOQ aggregation, costing, approval
     workflow) stay free of database sessions, so they can be unit tested and
     reused outside a request.
  3. Routers are mounted under the expected paths.

No database, network, or external services are required.
"""

import importlib
import inspect

import pytest


APP_MODULES = [
    "app.config",
    "app.db",
    "app.models.orm_models",
    "app.models.design_schema",
    "app.services.errors",
    "app.services.logging_config",
    "app.services.perf_monitor",
    "app.services.middleware",
    "app.services.classification_engine",
    "app.services.boq_engine",
    "app.services.costing_engine",
    "app.services.approval_workflow",
    "app.services.version_store",
    "app.services.calc_run_store",
    "app.services.estimate_store",
    "app.api.project_routes",
    "app.api.calc_run_routes",
    "app.api.takeoff_routes",
    "app.api.estimate_routes",
    "app.main",
]

PURE_ENGINES = [
    "app.services.classification_engine",
    "app.services.boq_engine",
    "app.services.costing_engine",
    "app.services.approval_workflow",
]


class TestModuleImports:

    @pytest.mark.parametrize("module_name", APP_MODULES)
    def test_module_imports(self, module_name):
        module = importlib.import_module(module_name)
        assert module is not None

    def test_stores_share_numbering(self):
        """Estimate ordinals go through the same collision/retry helper as version numbers."""
        from app.services import estimate_store, version_store
        assert estimate_store.insert_numbered is version_store.insert_numbered


class TestEngineLayering:

    @pytest.mark.parametrize("module_name", PURE_ENGINES)
    def test_engine_is_db_free(self, module_name):
        src = inspect.getsource(importlib.import_module(module_name))
        assert "AsyncSession" not in src, f"{module_name} must not depend on AsyncSession"
        assert "get_db" not in src, f"{module_name} must not depend on get_db"
        assert "sqlalchemy" not in src, f"{module_name} must stay pure computation"


class TestRouteTable:

    def test_routes_mounted(self):
        from app.main import app
        paths = set(app.openapi()["paths"])
        for expected in (
            "/health",
            "/metrics",
            "/api/projects",
            "/api/projects/{project_id}/calcruns",
            "/api/projects/{project_id}/takeoff-versions/{version_id}/status",
            "/api/takeoff-versions/{version_id}/cost-estimates",
            "/api/cost-estimates/{estimate_id}/lines/{line_index}",
        ):
            assert expected in paths, f"route {expected} not mounted"
