"""
DPWH Estimator API
FastAPI backend for the quantity-to-cost pipeline: calculation runs, takeoff
versions and priced cost estimates on async SQLAlchemy.
"""
import logging
import sys
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from app import config
from app.services.errors import DuplicateVersionNumber, InvalidTransition, NotFound, ValidationError
from app.services.logging_config import setup_logging
from app.services.middleware import RequestTimingMiddleware
from app.services.perf_monitor import perf_tracker

setup_logging(level=config.LOG_LEVEL, json_output=config.LOG_JSON)
logger = logging.getLogger("estimator-api")

# Record process start time for uptime calculation
_PROCESS_START = time.monotonic()

if not config.DATABASE_URL_CONFIGURED:
    logger.warning("MISSING env var: DATABASE_URL — running in dev mode")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from app.db import engine, init_db
    await init_db()
    yield
    await engine.dispose()


app = FastAPI(
    title="DPWH Estimator API",
    version="1.0.0",
    description="Quantity takeoff to DPWH pay-item BOQ and priced cost estimates",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Accept", "X-Requested-With", "X-Request-ID"],
)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)


# ---------------------------------------------------------------------------
# Pipeline errors → HTTP
# ---------------------------------------------------------------------------

@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content=exc.to_dict())


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content=exc.to_dict())


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=409, content=exc.to_dict())


@app.exception_handler(DuplicateVersionNumber)
async def duplicate_number_handler(request: Request, exc: DuplicateVersionNumber):
    logger.warning(str(exc), extra={"project_id": exc.project_id})
    return JSONResponse(status_code=503, content=exc.to_dict(), headers={"Retry-After": "1"})


# Routers
from app.api.project_routes import router as project_router
from app.api.calc_run_routes import router as calc_run_router
from app.api.takeoff_routes import router as takeoff_router
from app.api.estimate_routes import router as estimate_router

app.include_router(project_router)
app.include_router(calc_run_router)
app.include_router(takeoff_router)
app.include_router(estimate_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "version": app.version,
        "db_configured": config.DATABASE_URL_CONFIGURED,
    }


@app.get("/metrics")
async def metrics():
    """
    Performance metrics endpoint.

    Calculation-run throughput, per-stage timings, request latency and
    process memory, all from the in-process PerformanceTracker.
    """
    uptime_seconds = round(time.monotonic() - _PROCESS_START, 1)

    memory_mb: float = 0.0
    if sys.platform != "win32":
        import resource
        usage = resource.getrusage(resource.RUSAGE_SELF)
        # ru_maxrss is in kilobytes on Linux, bytes on macOS
        if sys.platform == "darwin":
            memory_mb = round(usage.ru_maxrss / (1024 * 1024), 2)
        else:
            memory_mb = round(usage.ru_maxrss / 1024, 2)

    return {
        "uptime_seconds": uptime_seconds,
        "memory_usage_mb": memory_mb,
        **perf_tracker.get_metrics(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
