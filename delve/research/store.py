"""SessionStore — durable snapshot of the one in-progress research session.

Storage layout:
    One JSON document under ``delve:research_session`` in a
    :class:`~delve.tools.kv_store.KeyValueStore` (memory, file or Redis).
    Starting a new topic overwrites it; sessions are never merged.
    The snapshot is first written once the plan exists, so PLANNING is
    never stored: an interrupted planning call leaves nothing to resume.

Lifecycle:
    load()    — at startup; a snapshot idle for longer than the session
                timeout (30 min) is discarded unread, a corrupt one is
                discarded with a warning, anything else becomes ``current``
    mutators  — every change rewrites the whole snapshot with a fresh
                ``last_activity``; with no current session they are no-ops
                (a reset while a call was in flight makes late writes vanish)

Dependency injection:
    Pass ``kv`` and ``clock`` in tests; in production leave them None.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog
from pydantic import ValidationError

from delve.models.research import (
    ChatMessage,
    ResearchSession,
    ResearchState,
    Source,
    SubtopicRecord,
    SubtopicStatus,
)
from delve.tools.kv_store import KeyValueStore, build_kv_store
from delve.utils.clock import Clock, now_ms

logger = structlog.get_logger().bind(component="research.store")

SESSION_KEY = "delve:research_session"
DEFAULT_SESSION_TIMEOUT_MS = 30 * 60 * 1000


class SessionStore:
    """Read/write interface for the persisted research session.

    Args:
        kv:         Key/value backend (defaults to ``build_kv_store()``).
        timeout_ms: Inactivity after which a session counts as expired.
        clock:      Epoch-ms clock.
    """

    def __init__(
        self,
        kv: KeyValueStore | None = None,
        timeout_ms: int | None = None,
        clock: Clock | None = None,
    ) -> None:
        if timeout_ms is None:
            from delve.config import settings
            timeout_ms = settings.session_timeout_seconds * 1000
        self._kv = kv if kv is not None else build_kv_store()
        self.timeout_ms = timeout_ms
        self._clock = clock or now_ms
        self._session: ResearchSession | None = None

    @property
    def current(self) -> ResearchSession | None:
        return self._session

    # ── Loading ───────────────────────────────────────────────────────────

    async def load(self) -> ResearchSession | None:
        """Rehydrate the stored session, if one exists and has not expired."""
        raw = await self._kv.get(SESSION_KEY)
        if raw is None:
            self._session = None
            return None
        try:
            session = ResearchSession.from_json(raw)
        except (ValidationError, ValueError) as exc:
            logger.warning("session_corrupt_discarded", error=str(exc))
            await self._kv.remove(SESSION_KEY)
            self._session = None
            return None

        idle_ms = self._clock() - session.last_activity
        if idle_ms > self.timeout_ms:
            logger.info("session_expired_discarded", session_id=session.id, idle_ms=idle_ms)
            await self._kv.remove(SESSION_KEY)
            self._session = None
            return None

        self._session = session
        logger.info(
            "session_loaded",
            session_id=session.id,
            topic=session.topic,
            state=session.research_state.value,
            progress=session.progress_pct,
        )
        return session

    # ── Mutators ──────────────────────────────────────────────────────────

    async def _save(self, session: ResearchSession) -> ResearchSession:
        session = session.model_copy(update={"last_activity": self._clock(), "is_active": True})
        await self._kv.set(SESSION_KEY, session.to_json())
        self._session = session
        logger.debug(
            "session_saved",
            session_id=session.id,
            state=session.research_state.value,
            progress=session.progress_pct,
        )
        return session

    async def create_session(self, topic: str, subtopic_titles: Sequence[str]) -> ResearchSession:
        """Start a new session (in PLAN_REVIEW), replacing any stored one."""
        now = self._clock()
        session = ResearchSession(
            id=f"research_{now}",
            topic=topic,
            subtopics=[SubtopicRecord(title=t) for t in subtopic_titles],
            research_state=ResearchState.PLAN_REVIEW,
            start_time=now,
            last_activity=now,
        )
        logger.info("session_created", session_id=session.id, topic=topic)
        return await self._save(session)

    async def replace_plan(self, subtopic_titles: Sequence[str]) -> ResearchSession | None:
        """Swap in a refined plan; all records start over as pending."""
        if self._session is None:
            return None
        subtopics = [SubtopicRecord(title=t) for t in subtopic_titles]
        return await self._save(self._session.model_copy(update={"subtopics": subtopics}))

    async def update_research_state(self, state: ResearchState) -> ResearchSession | None:
        if self._session is None:
            return None
        return await self._save(self._session.model_copy(update={"research_state": state}))

    async def update_subtopic_status(
        self,
        index: int,
        status: SubtopicStatus,
        content: str | None = None,
        sources: list[Source] | None = None,
        error: str | None = None,
    ) -> ResearchSession | None:
        """Advance subtopic *index*; out-of-range indexes are ignored.

        Raises:
            ValueError: If *status* would move the subtopic backwards.
        """
        if self._session is None or not 0 <= index < len(self._session.subtopics):
            return None
        subtopics = list(self._session.subtopics)
        subtopics[index] = subtopics[index].advance(
            status, content=content, sources=sources, error=error
        )
        return await self._save(self._session.model_copy(update={"subtopics": subtopics}))

    async def add_chat_message(self, role: str, content: str) -> ResearchSession | None:
        if self._session is None:
            return None
        history = [*self._session.chat_history, ChatMessage(role=role, content=content)]
        return await self._save(self._session.model_copy(update={"chat_history": history}))

    async def clear_session(self) -> None:
        await self._kv.remove(SESSION_KEY)
        if self._session is not None:
            logger.info("session_cleared", session_id=self._session.id)
        self._session = None

    # ── Queries ───────────────────────────────────────────────────────────

    def has_active_research(self) -> bool:
        """True while a session exists and has not reached DONE or ERROR."""
        s = self._session
        return bool(s and s.is_active and not s.research_state.is_terminal)

    def get_progress(self) -> int:
        """Percent of subtopics complete (0 with no session)."""
        return self._session.progress_pct if self._session else 0

    def is_expired(self) -> bool:
        """True with no session, or once inactivity exceeds the timeout."""
        if self._session is None or not self._session.last_activity:
            return True
        return self._clock() - self._session.last_activity > self.timeout_ms
