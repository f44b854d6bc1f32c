"""ResearchStateMachine — the legal stages of one research workflow.

    IDLE ──submit_topic──▶ PLANNING ──plan_ready──▶ PLAN_REVIEW ◀──┐
                              │                       │   ▲        │
                           failure               feedback │ refined/failure
                              ▼                       ▼   │        │
                            ERROR               REFINING_PLAN ─────┘

    PLAN_REVIEW ──approve──▶ RESEARCHING ──all_settled──▶ SYNTHESIZING
    SYNTHESIZING ──report_ready / no_usable_content──▶ DONE
    SYNTHESIZING ──unexpected_failure──▶ ERROR
    any ──reset──▶ IDLE

DONE and ERROR are terminal: the only way out is ``reset``.  Any other
(state, event) pair raises :class:`InvalidTransitionError`.
"""

from __future__ import annotations

import enum
from collections.abc import Callable

import structlog

from delve.engine.errors import InvalidTransitionError
from delve.models.research import ResearchState

logger = structlog.get_logger().bind(component="research.state_machine")


class ResearchEvent(str, enum.Enum):
    SUBMIT_TOPIC = "submit_topic"
    PLAN_READY = "plan_ready"
    FAILURE = "failure"
    USER_FEEDBACK = "user_feedback"
    REFINED = "refined"
    APPROVE = "approve"
    ALL_SETTLED = "all_settled"
    REPORT_READY = "report_ready"
    NO_USABLE_CONTENT = "no_usable_content"
    UNEXPECTED_FAILURE = "unexpected_failure"
    RESET = "reset"


S = ResearchState
E = ResearchEvent

TRANSITIONS: dict[tuple[ResearchState, ResearchEvent], ResearchState] = {
    (S.IDLE, E.SUBMIT_TOPIC): S.PLANNING,
    (S.PLANNING, E.PLAN_READY): S.PLAN_REVIEW,
    (S.PLANNING, E.FAILURE): S.ERROR,
    (S.PLAN_REVIEW, E.USER_FEEDBACK): S.REFINING_PLAN,
    (S.REFINING_PLAN, E.REFINED): S.PLAN_REVIEW,
    (S.REFINING_PLAN, E.FAILURE): S.PLAN_REVIEW,
    (S.PLAN_REVIEW, E.APPROVE): S.RESEARCHING,
    (S.RESEARCHING, E.ALL_SETTLED): S.SYNTHESIZING,
    (S.SYNTHESIZING, E.REPORT_READY): S.DONE,
    (S.SYNTHESIZING, E.NO_USABLE_CONTENT): S.DONE,
    (S.SYNTHESIZING, E.UNEXPECTED_FAILURE): S.ERROR,
}

TransitionListener = Callable[[ResearchState, ResearchEvent, ResearchState], None]


class ResearchStateMachine:
    """Holds the current :class:`ResearchState` and enforces the transition table."""

    def __init__(self, initial: ResearchState = ResearchState.IDLE) -> None:
        self._state = initial
        self._listeners: list[TransitionListener] = []

    @property
    def state(self) -> ResearchState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    def can(self, event: ResearchEvent) -> bool:
        return event == ResearchEvent.RESET or (self._state, event) in TRANSITIONS

    def subscribe(self, listener: TransitionListener) -> None:
        """Call *listener(old, event, new)* after every successful transition."""
        self._listeners.append(listener)

    def fire(self, event: ResearchEvent) -> ResearchState:
        """Apply *event* and return the new state.

        Raises:
            InvalidTransitionError: *event* is not legal in the current state.
        """
        if event == ResearchEvent.RESET:
            new = ResearchState.IDLE
        else:
            try:
                new = TRANSITIONS[(self._state, event)]
            except KeyError:
                raise InvalidTransitionError(self._state.value, event.value) from None

        old, self._state = self._state, new
        logger.debug("state_transition", old=old.value, trigger=event.value, new=new.value)
        for listener in self._listeners:
            listener(old, event, new)
        return new

    def restore(self, state: ResearchState) -> None:
        """Jump to *state* without an event — used when resuming a stored session."""
        logger.info("state_restored", old=self._state.value, new=state.value)
        self._state = state
