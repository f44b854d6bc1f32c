"""ResearchWorkflow — drives one topic from submission to final report.

This is the controller the CLI talks to.  It owns the state machine and
wires each transition to the orchestrator operation that belongs to it,
mirroring progress into the :class:`SessionStore` as it goes:

    submit_topic(topic)  IDLE → PLANNING → PLAN_REVIEW   (create_plan)
    give_feedback(text)  PLAN_REVIEW → REFINING_PLAN → PLAN_REVIEW
    approve()            PLAN_REVIEW → RESEARCHING → SYNTHESIZING → DONE
    reset()              any → IDLE, stored session cleared
    resume()             continue a stored active session

Reset does not cancel a call that is already in flight.  Every run carries
a token; when the call returns after a reset the token no longer matches
and its result is dropped, and no further subtopic calls are started.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog

from delve.engine.errors import ConfigurationError
from delve.engine.orchestrator import ResearchOrchestrator
from delve.engine.reports import RELAXED_MIN_CONTENT_CHARS, select_for_synthesis
from delve.models.research import (
    ChatMessage,
    FinalReport,
    ResearchSession,
    ResearchState,
    Source,
    SubtopicRecord,
    merge_sources,
)
from delve.research.state_machine import ResearchEvent, ResearchStateMachine
from delve.research.store import SessionStore
from delve.research.visibility import VisibilityMonitor

logger = structlog.get_logger().bind(component="research.workflow")

SubtopicListener = Callable[[int, SubtopicRecord, list[Source]], None]


class _RunSuperseded(Exception):
    """Raised inside a run whose token was invalidated by reset()."""


class ResearchWorkflow:
    """Stateful driver for a single research session.

    Args:
        orchestrator: Performs the generation calls.
        store:        Persists the session snapshot.
        machine:      State machine (a fresh one in IDLE if omitted).
        visibility:   Visibility monitor; its probe is pointed at this workflow.
    """

    def __init__(
        self,
        orchestrator: ResearchOrchestrator,
        store: SessionStore,
        *,
        machine: ResearchStateMachine | None = None,
        visibility: VisibilityMonitor | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = store
        self.machine = machine if machine is not None else ResearchStateMachine()
        self.visibility = visibility if visibility is not None else VisibilityMonitor()
        self.visibility.set_probe(self._active_research)

        self._run = 0
        self._subtopic_listeners: list[SubtopicListener] = []
        self._clear()

    # ── Read-only view ────────────────────────────────────────────────────

    @property
    def state(self) -> ResearchState:
        return self.machine.state

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def plan(self) -> list[str]:
        return list(self._plan)

    @property
    def subtopics(self) -> list[SubtopicRecord]:
        return [s.model_copy(deep=True) for s in self._subtopics]

    @property
    def sources(self) -> list[Source]:
        return list(self._sources)

    @property
    def chat_history(self) -> list[ChatMessage]:
        return list(self._chat)

    @property
    def report(self) -> FinalReport | None:
        return self._report

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def progress(self) -> int:
        if not self._subtopics:
            return 0
        done = sum(1 for s in self._subtopics if s.is_complete)
        return round(done / len(self._subtopics) * 100)

    def on_subtopic_update(self, listener: SubtopicListener) -> None:
        """Call *listener(index, record, sources)* after every subtopic step."""
        self._subtopic_listeners.append(listener)

    # ── Operations ────────────────────────────────────────────────────────

    async def submit_topic(self, topic: str) -> ResearchState:
        """Start a new session for *topic* and produce its plan.

        Any previous session (stored or in memory) is discarded first.
        Ends in PLAN_REVIEW, or ERROR when the plan could not be created.
        """
        topic = topic.strip()
        if not topic:
            raise ValueError("Topic must not be empty")
        if self.state != ResearchState.IDLE:
            await self.reset()
        # A session loaded at startup may still be stored while the machine is IDLE.
        await self.store.clear_session()

        token = self._begin()
        self._topic = topic
        self.machine.fire(ResearchEvent.SUBMIT_TOPIC)
        logger.info("topic_submitted", topic=topic)

        try:
            plan = await self.orchestrator.create_plan(topic)
        except Exception as exc:
            if self._stale(token):
                return self.state
            self._error = str(exc) or type(exc).__name__
            logger.error("plan_failed", topic=topic, error=self._error)
            self.machine.fire(ResearchEvent.FAILURE)
            return self.state
        if self._stale(token):
            return self.state

        self._plan = plan
        await self.store.create_session(topic, plan)
        await self._say("model", _format_plan(plan))
        self.machine.fire(ResearchEvent.PLAN_READY)
        return self.state

    async def give_feedback(self, feedback: str) -> list[str]:
        """Refine the plan with the user's *feedback*; returns the new plan.

        Refinement failures never leave PLAN_REVIEW: a configuration error
        is reported in the chat and the plan stays as it was.

        Raises:
            InvalidTransitionError: Not in PLAN_REVIEW.
        """
        self.machine.fire(ResearchEvent.USER_FEEDBACK)
        token = self._run
        self._error = None
        await self._say("user", feedback)
        await self.store.update_research_state(ResearchState.REFINING_PLAN)

        try:
            plan = await self.orchestrator.refine_plan(self._topic, self._plan, feedback)
        except ConfigurationError as exc:
            if self._stale(token):
                return self.plan
            self._error = str(exc)
            logger.warning("plan_refine_rejected", error=self._error)
            await self._say("model", f"I couldn't update the plan: {exc}")
            self.machine.fire(ResearchEvent.FAILURE)
            await self.store.update_research_state(ResearchState.PLAN_REVIEW)
            return self.plan
        if self._stale(token):
            return self.plan

        self._plan = plan
        await self.store.replace_plan(plan)
        await self._say("model", _format_plan(plan))
        self.machine.fire(ResearchEvent.REFINED)
        await self.store.update_research_state(ResearchState.PLAN_REVIEW)
        return self.plan

    async def approve(self) -> ResearchState:
        """Research every subtopic, then synthesize the report.

        Raises:
            InvalidTransitionError: Not in PLAN_REVIEW.
        """
        self.machine.fire(ResearchEvent.APPROVE)
        token = self._run
        self._subtopics = [SubtopicRecord(title=t) for t in self._plan]
        self._sources = []
        await self.store.update_research_state(ResearchState.RESEARCHING)
        logger.info("plan_approved", topic=self._topic, subtopics=len(self._plan))
        return await self._research(token)

    async def reset(self) -> None:
        """Back to IDLE.  Calls already in flight finish but are ignored."""
        self._run += 1
        self._clear()
        self.machine.fire(ResearchEvent.RESET)
        await self.store.clear_session()
        logger.info("workflow_reset")

    async def retry(self) -> ResearchState:
        """Full reset followed by a fresh run on the same topic."""
        topic = self._topic
        if not topic:
            raise ValueError("Nothing to retry")
        await self.reset()
        return await self.submit_topic(topic)

    async def resume(self, session: ResearchSession | None = None) -> ResearchSession | None:
        """Pick up a stored session that was interrupted.

        Plan states come back in PLAN_REVIEW.  RESEARCHING continues with
        the subtopics that are not complete yet; SYNTHESIZING runs the
        synthesis again.  Returns None when there is nothing to resume.
        """
        if session is None:
            session = self.store.current or await self.store.load()
        if session is None or session.research_state.is_terminal:
            return None

        token = self._begin()
        self._topic = session.topic
        self._plan = session.plan
        self._subtopics = [s.model_copy(deep=True) for s in session.subtopics]
        self._chat = list(session.chat_history)
        for record in self._subtopics:
            self._sources = merge_sources(self._sources, record.sources or [])
        logger.info(
            "session_resumed",
            session_id=session.id,
            state=session.research_state.value,
            progress=session.progress_pct,
        )

        state = session.research_state
        if state == ResearchState.RESEARCHING:
            self.machine.restore(ResearchState.RESEARCHING)
            await self._research(token)
        elif state == ResearchState.SYNTHESIZING:
            self.machine.restore(ResearchState.SYNTHESIZING)
            await self._synthesize(token)
        else:
            self.machine.restore(ResearchState.PLAN_REVIEW)
            await self.store.update_research_state(ResearchState.PLAN_REVIEW)
        return self.store.current

    # ── Internals ─────────────────────────────────────────────────────────

    def _clear(self) -> None:
        self._topic = ""
        self._plan: list[str] = []
        self._subtopics: list[SubtopicRecord] = []
        self._sources: list[Source] = []
        self._chat: list[ChatMessage] = []
        self._report: FinalReport | None = None
        self._error: str | None = None

    def _begin(self) -> int:
        self._run += 1
        self._clear()
        return self._run

    def _stale(self, token: int) -> bool:
        if token != self._run:
            logger.info("stale_result_discarded", run=token, current=self._run)
            return True
        return False

    def _active_research(self) -> tuple[str, int] | None:
        if not self.store.has_active_research():
            return None
        return self._topic, self.store.get_progress()

    async def _say(self, role: str, content: str) -> None:
        self._chat.append(ChatMessage(role=role, content=content))
        await self.store.add_chat_message(role, content)

    async def _research(self, token: int) -> ResearchState:
        async def on_update(index: int, record: SubtopicRecord, sources: list[Source]) -> None:
            if token != self._run:
                raise _RunSuperseded
            self._subtopics[index] = record
            self._sources = sources
            await self.store.update_subtopic_status(
                index, record.status, record.content, record.sources, record.error
            )
            for listener in self._subtopic_listeners:
                listener(index, record, list(sources))

        try:
            run = await self.orchestrator.research_plan(
                self._topic, self._subtopics, on_update, sources=self._sources
            )
        except _RunSuperseded:
            logger.info("research_abandoned", run=token)
            return self.state
        if self._stale(token):
            return self.state

        self._subtopics = run.subtopics
        self._sources = run.sources
        self.machine.fire(ResearchEvent.ALL_SETTLED)
        await self.store.update_research_state(ResearchState.SYNTHESIZING)
        return await self._synthesize(token)

    async def _synthesize(self, token: int) -> ResearchState:
        usable = select_for_synthesis(self._subtopics, RELAXED_MIN_CONTENT_CHARS)
        try:
            report = await self.orchestrator.synthesize_report(self._topic, self._subtopics)
        except Exception as exc:
            if self._stale(token):
                return self.state
            self._error = str(exc) or type(exc).__name__
            logger.error("synthesis_failed", topic=self._topic, error=self._error)
            self.machine.fire(ResearchEvent.UNEXPECTED_FAILURE)
            await self.store.update_research_state(ResearchState.ERROR)
            return self.state
        if self._stale(token):
            return self.state

        self._report = report
        event = ResearchEvent.REPORT_READY if usable else ResearchEvent.NO_USABLE_CONTENT
        self.machine.fire(event)
        await self.store.update_research_state(ResearchState.DONE)
        logger.info("research_done", topic=self._topic, outcome=event.value)
        return self.state


def _format_plan(plan: list[str]) -> str:
    lines = ["Here is the research plan:"]
    lines += [f"{i}. {title}" for i, title in enumerate(plan, 1)]
    return "\n".join(lines)
