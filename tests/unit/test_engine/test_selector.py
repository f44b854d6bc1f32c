"""Tests for ModelSelector — scoring, tie-break and candidate range."""

from __future__ import annotations

import pytest

from delve.engine.monitor import ModelStats, PerformanceMonitor
from delve.engine.selector import ModelSelector, score
from delve.tools.strategy import MODEL_STRATEGY, StrategyEntry, TaskCategory

TABLE = {
    TaskCategory.RESEARCH: StrategyEntry("primary", "fallback", 1000, 0.2),
}


def test_score_is_zero_without_requests():
    assert score(ModelStats()) == 0.0


def test_score_divides_by_latency_floor_of_one():
    fast = ModelStats(success_count=1, total_requests=1, avg_response_time_ms=0.2)
    assert score(fast) == pytest.approx(1.0)
    slow = ModelStats(success_count=1, total_requests=2, avg_response_time_ms=50)
    assert score(slow) == pytest.approx(0.01)


def test_cold_start_picks_primary():
    selector = ModelSelector(PerformanceMonitor(), TABLE)
    assert selector.select_model(TaskCategory.RESEARCH) == "primary"


def test_primary_wins_ties():
    monitor = PerformanceMonitor()
    monitor.record_request("primary", True, 100)
    monitor.record_request("fallback", True, 100)
    selector = ModelSelector(monitor, TABLE)
    assert selector.select_model(TaskCategory.RESEARCH) == "primary"


def test_fallback_needs_strictly_better_score():
    monitor = PerformanceMonitor()
    monitor.record_request("primary", False, 100)
    monitor.record_request("fallback", True, 100)
    selector = ModelSelector(monitor, TABLE)
    assert selector.select_model(TaskCategory.RESEARCH) == "fallback"


def test_faster_fallback_is_preferred():
    monitor = PerformanceMonitor()
    monitor.record_request("primary", True, 5000)
    monitor.record_request("fallback", True, 100)
    selector = ModelSelector(monitor, TABLE)
    assert selector.select_model(TaskCategory.RESEARCH) == "fallback"


def test_never_returns_an_unconfigured_model():
    monitor = PerformanceMonitor()
    monitor.record_request("some-other-model", True, 1)
    selector = ModelSelector(monitor)
    for task in TaskCategory:
        assert selector.select_model(task) in MODEL_STRATEGY[task].candidates


def test_unknown_task_raises_key_error():
    selector = ModelSelector(PerformanceMonitor(), TABLE)
    with pytest.raises(KeyError):
        selector.select_model(TaskCategory.SYNTHESIS)
