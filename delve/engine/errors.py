"""Error taxonomy for the research engine.

    DelveError
    ├── NonRetryableError        — never retried by execute_with_retry
    │   └── ConfigurationError   — missing/invalid credential; fatal at first call
    ├── TransientCallError       — timeout, rate limit, 5xx; retried with backoff
    ├── MalformedResponseError   — output not parseable into the expected shape
    └── InvalidTransitionError   — illegal (state, event) pair on the state machine
"""

from __future__ import annotations


class DelveError(Exception):
    """Base class for every error raised by Delve."""


class NonRetryableError(DelveError):
    """Raised for failures that another attempt cannot fix."""


class ConfigurationError(NonRetryableError):
    """The generation API is not usable as configured (e.g. no API key)."""


class TransientCallError(DelveError):
    """A generation call failed in a way that may succeed on retry.

    Args:
        message:     Human-readable reason.
        status_code: HTTP status when the failure came from a response.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedResponseError(DelveError):
    """The model answered, but not in a shape Delve can use."""


class InvalidTransitionError(DelveError):
    """A state-machine event is not allowed in the current state."""

    def __init__(self, state: str, event: str) -> None:
        super().__init__(f"Event {event!r} is not allowed in state {state!r}")
        self.state = state
        self.event = event
