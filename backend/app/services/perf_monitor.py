"""Performance monitoring for the quantity-to-cost pipeline."""
import time
import logging
import threading
import functools
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("estimator-api.perf")


def timed(stage: str) -> Callable:
    """
    Decorator that measures a synchronous pipeline stage and records it on
    the shared tracker under `stage`.

    Usage::

        @timed("aggregate")
        def aggregate(raw_lines):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                duration_ms = round((time.perf_counter() - start) * 1000, 2)
                perf_tracker.record_stage_duration(stage, duration_ms)
                logger.debug(f"stage {stage} took {duration_ms}ms", extra={"duration_ms": duration_ms})
        return wrapper
    return decorator


def timed_async(stage: str) -> Callable:
    """Async counterpart of `timed`."""
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                duration_ms = round((time.perf_counter() - start) * 1000, 2)
                perf_tracker.record_stage_duration(stage, duration_ms)
                logger.debug(f"stage {stage} took {duration_ms}ms", extra={"duration_ms": duration_ms})
        return wrapper
    return decorator


class PerformanceTracker:
    """
    Thread-safe in-memory tracker for pipeline-level metrics.

    Tracks:
    - Calculation runs completed / failed and raw lines processed
    - Per-stage durations (aggregate, price, ...) and the slowest stage
    - Request latency per route
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._runs_completed: int = 0
        self._runs_failed: int = 0
        self._raw_lines_processed: int = 0
        self._total_run_duration_ms: float = 0.0
        self._stage_durations: Dict[str, list] = {}   # stage -> [duration_ms, ...]
        self._slowest_stage: Optional[str] = None
        self._slowest_stage_ms: float = 0.0
        self._requests: Dict[str, list] = {}          # "GET /path" -> [duration_ms, ...]
        self._server_errors: int = 0

    # ------------------------------------------------------------------
    # Public write API
    # ------------------------------------------------------------------

    def record_run_complete(self, duration_ms: float, raw_line_count: int) -> None:
        """Call once when a calculation run finishes successfully."""
        with self._lock:
            self._runs_completed += 1
            self._raw_lines_processed += raw_line_count
            self._total_run_duration_ms += duration_ms

    def record_run_failed(self) -> None:
        with self._lock:
            self._runs_failed += 1

    def record_stage_duration(self, stage: str, duration_ms: float) -> None:
        with self._lock:
            self._stage_durations.setdefault(stage, []).append(duration_ms)
            if duration_ms > self._slowest_stage_ms:
                self._slowest_stage_ms = duration_ms
                self._slowest_stage = stage

    def record_request(self, method: str, path: str, status: int, duration_ms: float) -> None:
        with self._lock:
            self._requests.setdefault(f"{method} {path}", []).append(duration_ms)
            if status >= 500:
                self._server_errors += 1

    # ------------------------------------------------------------------
    # Public read API
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        """
        Return a snapshot of all collected metrics.

        Returns
        -------
        dict with keys:
            runs_completed          : int
            runs_failed             : int
            raw_lines_processed     : int
            avg_run_duration_ms     : float  (0 if none completed)
            raw_lines_per_second    : float  (0 if no run time recorded)
            slowest_stage           : str | None
            slowest_stage_ms        : float
            stage_avg_durations_ms  : dict  {stage: avg_ms}
            request_avg_durations_ms: dict  {"METHOD /path": avg_ms}
            server_error_count      : int
        """
        with self._lock:
            avg = (
                round(self._total_run_duration_ms / self._runs_completed, 2)
                if self._runs_completed > 0
                else 0.0
            )
            throughput = (
                round(self._raw_lines_processed / (self._total_run_duration_ms / 1000), 2)
                if self._total_run_duration_ms > 0
                else 0.0
            )

            def averages(samples: Dict[str, list]) -> Dict[str, float]:
                return {k: round(sum(v) / len(v), 2) for k, v in samples.items() if v}

            return {
                "runs_completed": self._runs_completed,
                "runs_failed": self._runs_failed,
                "raw_lines_processed": self._raw_lines_processed,
                "avg_run_duration_ms": avg,
                "raw_lines_per_second": throughput,
                "slowest_stage": self._slowest_stage,
                "slowest_stage_ms": round(self._slowest_stage_ms, 2),
                "stage_avg_durations_ms": averages(self._stage_durations),
                "request_avg_durations_ms": averages(self._requests),
                "server_error_count": self._server_errors,
            }

    def reset(self) -> None:
        """Reset all counters (useful in tests)."""
        with self._lock:
            self._runs_completed = 0
            self._runs_failed = 0
            self._raw_lines_processed = 0
            self._total_run_duration_ms = 0.0
            self._stage_durations.clear()
            self._slowest_stage = None
            self._slowest_stage_ms = 0.0
            self._requests.clear()
            self._server_errors = 0


# Module-level singleton, shared by the stores and the middleware.
perf_tracker = PerformanceTracker()
