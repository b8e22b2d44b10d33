"""Performance monitoring utilities for the scan pipeline stages."""
import time
import logging
import threading
import functools
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("twinforge-api.perf")


def timed_stage(stage: str) -> Callable:
    """
    Decorator for async stage handlers: records duration and errors on the
    module-level tracker under ``stage``.

    Usage::

        @timed_stage("refine")
        async def run_refinement(...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            except Exception:
                tracker.record_stage_error(stage)
                raise
            finally:
                duration_ms = round((time.perf_counter() - start) * 1000, 2)
                tracker.record_stage_duration(stage, duration_ms)
                logger.debug(
                    f"stage {stage} timed",
                    extra={"stage": stage, "duration_ms": duration_ms},
                )
        return wrapper
    return decorator


class PerformanceTracker:
    """
    Thread-safe in-memory tracker for per-stage metrics.

    Tracks:
    - Scans committed
    - Per-stage call count and average duration
    - Slowest stage call seen
    - Error count broken down by stage
    - Estimate fallbacks by strategy
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._scans_committed: int = 0
        self._stage_durations: Dict[str, list] = {}
        self._error_counts: Dict[str, int] = {}
        self._fallback_counts: Dict[str, int] = {}
        self._slowest_stage: Optional[str] = None
        self._slowest_stage_ms: float = 0.0

    # ------------------------------------------------------------------
    # Write API
    # ------------------------------------------------------------------

    def record_scan_committed(self) -> None:
        with self._lock:
            self._scans_committed += 1

    def record_stage_duration(self, stage: str, duration_ms: float) -> None:
        with self._lock:
            self._stage_durations.setdefault(stage, []).append(duration_ms)
            if duration_ms > self._slowest_stage_ms:
                self._slowest_stage_ms = duration_ms
                self._slowest_stage = stage

    def record_stage_error(self, stage: str) -> None:
        with self._lock:
            self._error_counts[stage] = self._error_counts.get(stage, 0) + 1

    def record_fallback(self, strategy: str) -> None:
        with self._lock:
            self._fallback_counts[strategy] = self._fallback_counts.get(strategy, 0) + 1

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        """
        Return a snapshot of all collected metrics.

        Returns
        -------
        dict with keys:
            scans_committed        : int
            stage_calls            : dict  {stage: count}
            stage_avg_durations_ms : dict  {stage: avg_ms}
            slowest_stage          : str | None
            slowest_stage_ms       : float
            error_count            : int   (total across all stages)
            error_count_by_stage   : dict  {stage: count}
            fallbacks_by_strategy  : dict  {strategy: count}
        """
        with self._lock:
            stage_avgs: Dict[str, float] = {}
            for stage, durations in self._stage_durations.items():
                stage_avgs[stage] = round(sum(durations) / len(durations), 2) if durations else 0.0

            return {
                "scans_committed": self._scans_committed,
                "stage_calls": {s: len(d) for s, d in self._stage_durations.items()},
                "stage_avg_durations_ms": stage_avgs,
                "slowest_stage": self._slowest_stage,
                "slowest_stage_ms": round(self._slowest_stage_ms, 2),
                "error_count": sum(self._error_counts.values()),
                "error_count_by_stage": dict(self._error_counts),
                "fallbacks_by_strategy": dict(self._fallback_counts),
            }

    def reset(self) -> None:
        """Reset all counters (useful in tests)."""
        with self._lock:
            self._scans_committed = 0
            self._stage_durations.clear()
            self._error_counts.clear()
            self._fallback_counts.clear()
            self._slowest_stage = None
            self._slowest_stage_ms = 0.0


# Module-level singleton; import this instance everywhere else.
tracker = PerformanceTracker()
