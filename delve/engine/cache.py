"""ResponseCache — TTL memoisation of generation results.

Keys are composite strings built by the orchestrator
(``research:{subtopic}:{topic}:{model}``), values are whatever the operation
returned.  An entry is valid while ``now - cached_at < ttl``.

Staleness is never observable: ``get`` checks age at read time, so an
expired entry is a miss even if the background sweep has not run yet.  The
sweep (every 5 minutes by default) only reclaims memory.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import structlog

from delve.tools.strategy import TaskCategory
from delve.utils.clock import Clock, now_ms

logger = structlog.get_logger().bind(component="engine.cache")

DEFAULT_TTL_MS = 30 * 60 * 1000
DEFAULT_SWEEP_INTERVAL_MS = 5 * 60 * 1000

# Synthesis is the most context-sensitive step and runs once per session;
# refinement feedback is effectively unique per call.
UNCACHEABLE_TASKS = frozenset({TaskCategory.SYNTHESIS, TaskCategory.REFINEMENT})


def is_cacheable(task: TaskCategory) -> bool:
    return task not in UNCACHEABLE_TASKS


@dataclass
class CacheEntry:
    response: Any
    cached_at: int
    model: str


class ResponseCache:
    """In-process TTL cache.

    Args:
        ttl_ms:            Entry lifetime in milliseconds.
        sweep_interval_ms: Period of the optional background sweeper.
        clock:             Epoch-ms clock (inject a fake in tests).
    """

    def __init__(
        self,
        ttl_ms: int = DEFAULT_TTL_MS,
        sweep_interval_ms: int = DEFAULT_SWEEP_INTERVAL_MS,
        clock: Clock | None = None,
    ) -> None:
        self.ttl_ms = ttl_ms
        self.sweep_interval_ms = sweep_interval_ms
        self._clock = clock or now_ms
        self._entries: dict[str, CacheEntry] = {}
        self._sweeper: asyncio.Task | None = None

    def _expired(self, entry: CacheEntry, now: int) -> bool:
        return now - entry.cached_at >= self.ttl_ms

    def get(self, key: str) -> Any | None:
        """Return the cached value for *key*, or None if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry, self._clock()):
            logger.debug("cache_expired", key=key)
            return None
        logger.debug("cache_hit", key=key, model=entry.model)
        return entry.response

    def set(self, key: str, value: Any, model_id: str) -> None:
        """Store *value* under *key*, replacing any existing entry."""
        self._entries[key] = CacheEntry(response=value, cached_at=self._clock(), model=model_id)
        logger.debug("cache_set", key=key, model=model_id)

    def sweep_expired(self) -> int:
        """Evict every expired entry; return how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if self._expired(e, now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("cache_swept", evicted=len(expired), remaining=len(self._entries))
        return len(expired)

    def stats(self) -> dict[str, int]:
        """``{total, valid, expired}`` — counts without evicting anything."""
        now = self._clock()
        expired = sum(1 for e in self._entries.values() if self._expired(e, now))
        return {
            "total": len(self._entries),
            "valid": len(self._entries) - expired,
            "expired": expired,
        }

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    # ── Background sweep ──────────────────────────────────────────────────

    def start_sweeper(self) -> asyncio.Task:
        """Start the periodic sweep on the running event loop (idempotent)."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(
                self._sweep_loop(), name="delve-cache-sweeper"
            )
        return self._sweeper

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_ms / 1000)
            self.sweep_expired()
