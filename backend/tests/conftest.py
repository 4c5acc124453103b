"""
conftest.py — Shared pytest fixtures for the DPWH estimator backend test suite.

Engine tests are pure unit tests. Store and route tests run against an
in-memory SQLite database (aiosqlite + StaticPool so every session shares the
one connection); each test gets a freshly created schema.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``app.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
import pytest
import pytest_asyncio

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any app imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    from sqlalchemy.ext.asyncio import create_async_engine
    from sqlalchemy.pool import StaticPool
    from app.db import Base
    from app.models import orm_models  # noqa: F401

    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def project_id(db_session):
    """
    Id of a committed project. Only the id is handed out: a numbering retry
    rolls the session back and expires every loaded object.
    """
    from app.models.orm_models import Project
    project = Project(name="Two-Storey School Building", location="Tacloban City", district="Leyte 1st DEO")
    db_session.add(project)
    await db_session.commit()
    return project.id


@pytest_asyncio.fixture
async def client(session_factory):
    """httpx client on the ASGI app with get_db bound to the test database."""
    import httpx
    from app.db import get_db
    from app.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Shared sample data
# ---------------------------------------------------------------------------

@pytest.fixture
def raw_lines():
    """
    Takeoff output for two footings, one column and some fill:

        900 (1)C  concrete  1.20 + 0.80 + 0.45 = 2.45 m³   (two spellings of the item)
        902 (1)A2 rebar     85.5 + 40.0        = 125.5 kg
        903 (1)   formwork  6.0               m²
        804 (1)A  fill      12.0              m³
    """
    return [
        {
            "id": "rq-001", "source_element_id": "F-1", "trade": "Concrete",
            "resource_key": "concrete_fc21", "quantity": 1.20, "unit": "m³",
            "formula_text": "1.5 × 1.5 × 0.5 + pedestal", "tags": ["dpwh:900 (1) c"],
        },
        {
            "id": "rq-002", "source_element_id": "F-2", "trade": "Concrete",
            "resource_key": "concrete_fc21", "quantity": 0.80, "unit": "cu.m",
            "tags": ["dpwh:900 (1)C"],
        },
        {
            "id": "rq-003", "source_element_id": "C-1", "trade": "Concrete",
            "resource_key": "concrete_fc21", "quantity": 0.45, "unit": "m3",
            "assumptions": ["DPWH Item: 900 (1) c"],
        },
        {
            "id": "rq-004", "source_element_id": "F-1", "trade": "Rebar",
            "resource_key": "902 (1) a2", "quantity": 85.5, "unit": "kg",
        },
        {
            "id": "rq-005", "source_element_id": "C-1", "trade": "Rebar",
            "resource_key": "902 (1) a2", "quantity": 40.0, "unit": "kg",
        },
        {
            "id": "rq-006", "source_element_id": "C-1", "trade": "Formwork",
            "resource_key": "formwork_column", "quantity": 6.0, "unit": "m²",
        },
        {
            "id": "rq-007", "source_element_id": "SITE", "trade": "Earthwork",
            "resource_key": "804 (1) a", "quantity": 12.0, "unit": "m³",
        },
    ]


@pytest.fixture
def scenario_rate_table():
    """
    Concrete pay item priced with the textbook DUPA inputs:
        labor     1 person × 8 h × ₱220.85
        equipment 1 unit   × 1 h × ₱416.68
        material  1 unit   × ₱500.00
    """
    return {
        "pay_item_number": "900 (1) c",
        "description": "Structural Concrete, Class A, 28 days",
        "unit": "Cubic Meter",
        "labor_items": [{"designation": "Foreman", "persons": 1, "hours": 8, "hourly_rate": 220.85}],
        "equipment_items": [{"description": "Concrete mixer", "units": 1, "hours": 1, "hourly_rate": 416.68}],
        "material_items": [{"description": "Ready-mix", "quantity": 1, "unit_cost": 500.0, "unit": "m³"}],
    }
