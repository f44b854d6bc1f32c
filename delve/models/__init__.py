"""Pydantic models shared across the engine, the store and the CLI."""

from .research import (
    ChatMessage,
    FinalReport,
    ResearchSession,
    ResearchState,
    Source,
    SubtopicRecord,
    SubtopicStatus,
    merge_sources,
)

__all__ = [
    "ChatMessage",
    "FinalReport",
    "ResearchSession",
    "ResearchState",
    "Source",
    "SubtopicRecord",
    "SubtopicStatus",
    "merge_sources",
]
