"""PerformanceMonitor — per-model request bookkeeping.

Every generation attempt (including each retried attempt) is recorded here
by the orchestrator, and the selector reads the resulting stats to decide
between a task's primary and fallback model.

``avg_response_time_ms`` is an exponential moving average: each new sample
contributes 10 %, history 90 %.  The first sample is blended against an
initial average of 0.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

import structlog

from delve.utils.clock import Clock, now_ms

logger = structlog.get_logger().bind(component="engine.monitor")

EMA_SAMPLE_WEIGHT = 0.1


@dataclass
class ModelStats:
    """Running counters for one model id."""

    success_count: int = 0
    error_count: int = 0
    total_requests: int = 0
    avg_response_time_ms: float = 0.0
    last_used_at: int = 0

    @property
    def success_rate(self) -> float:
        """Fraction of successful requests; 0.0 before the first request."""
        if self.total_requests == 0:
            return 0.0
        return self.success_count / self.total_requests


class PerformanceMonitor:
    """Tracks success/failure and latency per model identifier.

    Pure bookkeeping — nothing here calls the generation API or decides
    anything.  Shared by all orchestrator operations on one event loop, so
    no locking is needed.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or now_ms
        self._stats: dict[str, ModelStats] = {}

    def record_request(self, model_id: str, success: bool, elapsed_ms: float) -> ModelStats:
        """Record one attempt against *model_id* and return its updated stats."""
        stats = self._stats.setdefault(model_id, ModelStats())
        stats.total_requests += 1
        if success:
            stats.success_count += 1
        else:
            stats.error_count += 1
        stats.avg_response_time_ms = (
            stats.avg_response_time_ms * (1 - EMA_SAMPLE_WEIGHT)
            + elapsed_ms * EMA_SAMPLE_WEIGHT
        )
        stats.last_used_at = self._clock()

        logger.debug(
            "model_request_recorded",
            model=model_id,
            success=success,
            elapsed_ms=round(elapsed_ms, 1),
            avg_ms=round(stats.avg_response_time_ms, 1),
        )
        return stats

    def stats_for(self, model_id: str) -> ModelStats:
        """Stats for *model_id* — a zeroed :class:`ModelStats` if never used.

        Returns a copy; mutating it does not affect the monitor.
        """
        stats = self._stats.get(model_id)
        return ModelStats(**asdict(stats)) if stats else ModelStats()

    def all_stats(self) -> dict[str, dict[str, Any]]:
        """Every recorded model, with a derived ``success_rate`` display string."""
        out: dict[str, dict[str, Any]] = {}
        for model_id, stats in self._stats.items():
            view = asdict(stats)
            view["success_rate"] = (
                f"{stats.success_rate * 100:.2f}%" if stats.total_requests else "0%"
            )
            out[model_id] = view
        return out

    def reset(self) -> None:
        self._stats.clear()
