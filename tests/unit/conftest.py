"""Unit-test conftest — MockGeneration, a fake clock, and shared fixtures.

All fixtures here are available to every test under tests/unit/ without import.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from delve.engine.cache import ResponseCache
from delve.engine.monitor import PerformanceMonitor
from delve.engine.orchestrator import ResearchOrchestrator
from delve.research.store import SessionStore
from delve.tools.generation import GenerationRequest, GenerationResult
from delve.tools.kv_store import MemoryKVStore

T0 = 1_700_000_000_000


# ─────────────────────────────────────────────────────────────────────────────
# MockGeneration: drop-in replacement for GenerationClient
# ─────────────────────────────────────────────────────────────────────────────

class MockGeneration:
    """Configurable fake GenerationClient for unit tests.

    Responses are chosen by substring match against the prompt, first rule
    wins.  Each rule holds a queue of outcomes: a string (returned as the
    text), a GenerationResult, or an exception instance (raised).  The last
    outcome of a queue repeats forever.

    Args:
        default: Text returned when no rule matches.
        delay:   Seconds to sleep before every call returns.
        raises:  If set, every call raises this exception.
    """

    def __init__(
        self,
        *,
        default: str = '{"content": "mock content"}',
        delay: float = 0.0,
        raises: Exception | None = None,
    ) -> None:
        self.default = default
        self.delay = delay
        self.raises = raises
        self._rules: list[tuple[str, list[Any], float]] = []
        # Call log for assertions
        self.requests: list[GenerationRequest] = []
        self.events: list[str] = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    def on(self, needle: str, *outcomes: Any, delay: float = 0.0) -> "MockGeneration":
        """Answer prompts containing *needle* with *outcomes*, in order."""
        self._rules.append((needle, list(outcomes), delay))
        return self

    def prompts_containing(self, needle: str) -> list[GenerationRequest]:
        return [r for r in self.requests if needle in r.prompt]

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        label = request.prompt.splitlines()[0] if request.prompt else ""
        self.events.append(f"start:{label}")
        try:
            outcome, delay = self._pick(request.prompt)
            if delay or self.delay:
                await asyncio.sleep(delay or self.delay)
            if self.raises is not None:
                raise self.raises
            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, GenerationResult):
                return outcome
            return GenerationResult(text=outcome, model=request.model)
        finally:
            self.active -= 1
            self.events.append(f"end:{label}")

    def _pick(self, prompt: str) -> tuple[Any, float]:
        for needle, outcomes, delay in self._rules:
            if needle in prompt:
                outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
                return outcome, delay
        return self.default, 0.0

    async def close(self) -> None:
        self.closed = True

    # ── Response builders ─────────────────────────────────────────────────

    @staticmethod
    def plan_json(*titles: str) -> str:
        return json.dumps({"subtopics": list(titles)})

    @staticmethod
    def research_json(content: str, *uris: str) -> str:
        return json.dumps({
            "content": content,
            "sources": [{"uri": u, "title": f"Title of {u}"} for u in uris],
        })

    @staticmethod
    def report_json(summary: list[str], report: str) -> str:
        return json.dumps({"summary": summary, "report": report})


# Comfortably above the 200-character synthesis threshold
LONG_TEXT = (
    "Group theory studies algebraic structures known as groups. A group is a set "
    "equipped with a binary operation that is associative, has an identity element, "
    "and in which every element has an inverse. Symmetry groups, permutation groups "
    "and matrix groups are the classic examples studied in a first course."
)


# ─────────────────────────────────────────────────────────────────────────────
# Time helpers
# ─────────────────────────────────────────────────────────────────────────────

class FakeClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, start: int = T0) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class SleepRecorder:
    """Async sleeper that records requested delays (seconds) and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def long_text() -> str:
    return LONG_TEXT


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def mock_generation() -> MockGeneration:
    return MockGeneration()


@pytest.fixture
def orchestrator(mock_generation, clock, sleeper) -> ResearchOrchestrator:
    """Orchestrator over MockGeneration with a fake clock and instant retries."""
    return ResearchOrchestrator(
        mock_generation,
        monitor=PerformanceMonitor(clock=clock),
        cache=ResponseCache(clock=clock),
        max_retries=3,
        base_delay_ms=1000,
        sleep=sleeper,
    )


@pytest.fixture
def kv() -> MemoryKVStore:
    return MemoryKVStore()


@pytest.fixture
def store(kv, clock) -> SessionStore:
    return SessionStore(kv=kv, timeout_ms=30 * 60 * 1000, clock=clock)
