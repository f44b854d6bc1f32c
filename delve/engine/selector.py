"""ModelSelector — choose between a task's primary and fallback model.

score(model) = success_rate / max(avg_response_time_ms, 1)

The comparison is seeded with the primary model and only replaced by a
strictly greater score, so the primary wins every tie — including the cold
start where neither candidate has any recorded requests.
"""

from __future__ import annotations

from typing import Mapping

import structlog

from delve.engine.monitor import ModelStats, PerformanceMonitor
from delve.tools.strategy import StrategyEntry, TaskCategory, resolve_strategy

logger = structlog.get_logger().bind(component="engine.selector")


def score(stats: ModelStats) -> float:
    """Success rate per millisecond of average latency (0.0 when unused)."""
    if stats.total_requests == 0:
        return 0.0
    return stats.success_rate / max(stats.avg_response_time_ms, 1.0)


class ModelSelector:
    """Picks a model id for a task from live :class:`PerformanceMonitor` stats.

    Args:
        monitor:  Shared performance monitor.
        strategy: Task → :class:`StrategyEntry` table (defaults to
                  :data:`delve.tools.strategy.MODEL_STRATEGY`).
    """

    def __init__(
        self,
        monitor: PerformanceMonitor,
        strategy: Mapping[TaskCategory, StrategyEntry] | None = None,
    ) -> None:
        self._monitor = monitor
        self._strategy = strategy

    def strategy_for(self, task: TaskCategory) -> StrategyEntry:
        return resolve_strategy(task, self._strategy)

    def select_model(self, task: TaskCategory) -> str:
        """Return primary or fallback for *task*; never any other id."""
        entry = self.strategy_for(task)
        best = entry.primary_model
        best_score = score(self._monitor.stats_for(best))
        for candidate in entry.candidates[1:]:
            candidate_score = score(self._monitor.stats_for(candidate))
            if candidate_score > best_score:
                best, best_score = candidate, candidate_score

        logger.debug("model_selected", task=task.value, model=best, score=best_score)
        return best
