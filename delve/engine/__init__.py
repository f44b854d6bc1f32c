"""Delve engine — model selection, caching, retry and the research orchestrator.

    PerformanceMonitor   — per-model success/failure and latency (EMA)
    ModelSelector        — picks primary or fallback per task from monitor stats
    ResponseCache        — TTL memoisation of generation results
    execute_with_retry   — exponential-backoff retry combinator
    ResearchOrchestrator — plan / refine / research / synthesize
"""
