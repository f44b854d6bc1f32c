"""Model strategy table — TaskCategory → primary/fallback model pair.

Every call to the generation API serves one of four task categories.  Each
category is mapped, once at import time, to a :class:`StrategyEntry`: two
candidate model ids plus the call parameters used for that kind of work.

    PLANNING   — fast, cheap model; short structured output (subtopic list)
    RESEARCH   — deeper model; long-form section content with citations
    SYNTHESIS  — strongest model; whole-report synthesis, lowest temperature
    REFINEMENT — plan edits driven by user feedback

Usage::

    from delve.tools.strategy import TaskCategory, resolve_strategy

    entry = resolve_strategy(TaskCategory.RESEARCH)
    entry.candidates          # → ("gpt-4.1", "gpt-4.1-mini")
    entry.max_tokens          # → 8192

The table is never mutated.  Which of the two candidates is actually used
is decided per call by :class:`delve.engine.selector.ModelSelector`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

# ── Task categories ───────────────────────────────────────────────────────────


class TaskCategory(str, enum.Enum):
    """Coarse-grained purpose of a generation call."""

    PLANNING = "PLANNING"
    RESEARCH = "RESEARCH"
    SYNTHESIS = "SYNTHESIS"
    REFINEMENT = "REFINEMENT"


# ── StrategyEntry ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StrategyEntry:
    """Primary/fallback model pair and call parameters for one category.

    Args:
        primary_model:  Preferred model id; wins every selector tie.
        fallback_model: Alternative the selector switches to when its
                        observed score is strictly better.
        max_tokens:     Output token budget for calls in this category.
        temperature:    Sampling temperature.
        rationale:      Why this pair was chosen (shown by ``delve strategy``).
    """

    primary_model: str
    fallback_model: str
    max_tokens: int
    temperature: float
    rationale: str = ""

    @property
    def candidates(self) -> tuple[str, str]:
        """``(primary, fallback)`` — the only ids the selector may return."""
        return (self.primary_model, self.fallback_model)


# ── The table ─────────────────────────────────────────────────────────────────

MODEL_STRATEGY: Mapping[TaskCategory, StrategyEntry] = MappingProxyType({
    TaskCategory.PLANNING: StrategyEntry(
        primary_model="gpt-4.1-mini",
        fallback_model="gpt-4o-mini",
        max_tokens=2048,
        temperature=0.3,
        rationale="Fast and cheap for planning",
    ),
    TaskCategory.RESEARCH: StrategyEntry(
        primary_model="gpt-4.1",
        fallback_model="gpt-4.1-mini",
        max_tokens=8192,
        temperature=0.2,
        rationale="Deep enough for research, balanced cost/quality",
    ),
    TaskCategory.SYNTHESIS: StrategyEntry(
        primary_model="gpt-4o",
        fallback_model="gpt-4.1",
        max_tokens=16384,
        temperature=0.1,
        rationale="Maximum capability for whole-report synthesis",
    ),
    TaskCategory.REFINEMENT: StrategyEntry(
        primary_model="gpt-4.1",
        fallback_model="gpt-4.1-mini",
        max_tokens=4096,
        temperature=0.4,
        rationale="Iterative plan refinement from user feedback",
    ),
})


def resolve_strategy(
    task: TaskCategory,
    table: Mapping[TaskCategory, StrategyEntry] | None = None,
) -> StrategyEntry:
    """Return the :class:`StrategyEntry` for *task*.

    Raises:
        KeyError: If *task* has no entry in *table* (defaults to
                  :data:`MODEL_STRATEGY`).
    """
    table = MODEL_STRATEGY if table is None else table
    try:
        return table[task]
    except KeyError:
        raise KeyError(f"No model strategy configured for task {task!r}") from None
