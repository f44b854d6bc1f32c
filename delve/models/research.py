"""Research data model — sessions, subtopics, sources, reports.

ResearchSession — the unit of persistence; one stored at a time
SubtopicRecord  — one independently researched sub-question of the plan
Source          — a cited reference (uri + title), deduplicated by uri
FinalReport     — summary bullets + markdown report, produced once per session

Sessions serialise with camelCase keys and epoch-ms timestamps, so the
persisted JSON layout is::

    {id, topic, subtopics: [{title, status, content?, sources?}],
     researchState, chatHistory: [{role, content}],
     startTime, lastActivity, isActive}
"""

from __future__ import annotations

import enum
from collections.abc import Iterable

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from delve.utils.clock import now_ms


class ResearchState(str, enum.Enum):
    """Which stage of the workflow is in flight."""

    IDLE = "idle"
    PLANNING = "planning"
    PLAN_REVIEW = "plan_review"
    REFINING_PLAN = "refining_plan"
    RESEARCHING = "researching"
    SYNTHESIZING = "synthesizing"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ResearchState.DONE, ResearchState.ERROR)


class SubtopicStatus(str, enum.Enum):
    """Lifecycle of a subtopic.  Only ever moves forward."""

    PENDING = "pending"
    LOADING = "loading"
    COMPLETE = "complete"


_STATUS_ORDER = {
    SubtopicStatus.PENDING: 0,
    SubtopicStatus.LOADING: 1,
    SubtopicStatus.COMPLETE: 2,
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )


class Source(_CamelModel):
    """A cited external reference."""

    uri: str
    title: str = ""


class ChatMessage(_CamelModel):
    """One turn of the plan-review conversation."""

    role: str = Field(description="'user' or 'model'")
    content: str


class SubtopicRecord(_CamelModel):
    """One sub-question of the research plan.

    ``error`` is set when the subtopic settled with a placeholder instead of
    real content — synthesis uses it to tell failures from short answers.
    """

    title: str
    status: SubtopicStatus = SubtopicStatus.PENDING
    content: str | None = None
    sources: list[Source] | None = None
    error: str | None = None

    def advance(
        self,
        status: SubtopicStatus,
        *,
        content: str | None = None,
        sources: list[Source] | None = None,
        error: str | None = None,
    ) -> "SubtopicRecord":
        """Return a copy moved to *status*, merging any provided fields.

        Raises:
            ValueError: If *status* would move the record backwards.
        """
        if _STATUS_ORDER[status] < _STATUS_ORDER[self.status]:
            raise ValueError(
                f"Subtopic {self.title!r} cannot move from "
                f"{self.status.value} back to {status.value}"
            )
        updates: dict = {"status": status}
        if content is not None:
            updates["content"] = content
        if sources is not None:
            updates["sources"] = list(sources)
        if error is not None:
            updates["error"] = error
        return self.model_copy(update=updates)

    @property
    def is_complete(self) -> bool:
        return self.status == SubtopicStatus.COMPLETE

    @property
    def failed(self) -> bool:
        return self.error is not None


class FinalReport(_CamelModel):
    """Synthesised output: 4–6 key points and a markdown report."""

    summary: list[str]
    report: str


class ResearchSession(_CamelModel):
    """Durable snapshot of one topic's research workflow."""

    id: str = Field(default_factory=lambda: f"research_{now_ms()}")
    topic: str
    subtopics: list[SubtopicRecord] = Field(default_factory=list)
    research_state: ResearchState = ResearchState.PLAN_REVIEW
    chat_history: list[ChatMessage] = Field(default_factory=list)
    start_time: int = Field(default_factory=now_ms)
    last_activity: int = Field(default_factory=now_ms)
    is_active: bool = True

    @property
    def plan(self) -> list[str]:
        return [s.title for s in self.subtopics]

    @property
    def progress_pct(self) -> int:
        """Percentage of subtopics complete, rounded to an int."""
        total = len(self.subtopics)
        if total == 0:
            return 0
        done = sum(1 for s in self.subtopics if s.is_complete)
        return round(done / total * 100)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str) -> "ResearchSession":
        return cls.model_validate_json(raw)


def merge_sources(existing: Iterable[Source], new: Iterable[Source]) -> list[Source]:
    """Append *new* sources to *existing*, skipping any uri already present.

    Order is preserved and re-merging the same sources is a no-op.
    """
    merged = list(existing)
    seen = {s.uri for s in merged}
    for source in new:
        if source.uri and source.uri not in seen:
            seen.add(source.uri)
            merged.append(source)
    return merged
