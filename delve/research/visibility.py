"""VisibilityMonitor — advisory tracking of whether the user can see the run.

Research keeps going while the terminal is backgrounded.  When the view goes
to the background while a session is active, the monitor publishes a
:class:`VisibilityAdvisory`: progress is already persisted, but the call in
flight cannot be resumed mid-flight, only the next step can.  Nothing is
paused or cancelled here.

In the CLI, job control drives it: SIGTSTP (Ctrl-Z) marks the view hidden,
SIGCONT (``fg``) marks it visible again.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from delve.utils.clock import Clock, now_ms

logger = structlog.get_logger().bind(component="research.visibility")

HIDDEN_TOO_LONG_MS = 5 * 60 * 1000


@dataclass(frozen=True)
class VisibilityAdvisory:
    """Published when the view is hidden while research is active."""

    topic: str
    progress: int
    message: str


AdvisoryListener = Callable[[VisibilityAdvisory], None]
# (topic, progress_pct) while research is active, None otherwise
ActivityProbe = Callable[[], "tuple[str, int] | None"]


class VisibilityMonitor:
    """Tracks hidden/visible transitions of the user-facing view.

    Args:
        probe: Reports the active research, if any.  Consulted on every
               transition to hidden.
        clock: Epoch-ms clock.
    """

    def __init__(self, probe: ActivityProbe | None = None, clock: Clock | None = None) -> None:
        self._probe = probe
        self._clock = clock or now_ms
        self._hidden_since: int | None = None
        self._listeners: list[AdvisoryListener] = []

    def set_probe(self, probe: ActivityProbe | None) -> None:
        self._probe = probe

    def subscribe(self, listener: AdvisoryListener) -> None:
        self._listeners.append(listener)

    @property
    def is_visible(self) -> bool:
        return self._hidden_since is None

    def hidden_duration_ms(self) -> int:
        """How long the view has been hidden (0 while visible)."""
        if self._hidden_since is None:
            return 0
        return max(0, self._clock() - self._hidden_since)

    def is_hidden_too_long(self, max_hidden_ms: int = HIDDEN_TOO_LONG_MS) -> bool:
        return self.hidden_duration_ms() > max_hidden_ms

    def mark_hidden(self) -> VisibilityAdvisory | None:
        """Record that the view went to the background.

        Returns the advisory when one was published (research is active).
        Repeated calls while already hidden do nothing.
        """
        if self._hidden_since is not None:
            return None
        self._hidden_since = self._clock()

        active = self._probe() if self._probe is not None else None
        if active is None:
            logger.debug("view_hidden", active=False)
            return None

        topic, progress = active
        advisory = VisibilityAdvisory(
            topic=topic,
            progress=progress,
            message=(
                f"Research on '{topic}' is {progress}% complete and saved. "
                "The request currently in flight cannot be resumed if the app "
                "is closed; research will continue from the next subtopic."
            ),
        )
        logger.info("visibility_advisory", topic=topic, progress=progress)
        for listener in self._listeners:
            listener(advisory)
        return advisory

    def mark_visible(self) -> int:
        """Record that the view is back; returns how long it was hidden (ms)."""
        if self._hidden_since is None:
            return 0
        hidden_ms = self.hidden_duration_ms()
        self._hidden_since = None
        if hidden_ms > HIDDEN_TOO_LONG_MS:
            logger.info("view_visible_after_long_absence", hidden_ms=hidden_ms)
        else:
            logger.debug("view_visible", hidden_ms=hidden_ms)
        return hidden_ms


def install_signal_handlers(
    monitor: VisibilityMonitor,
    loop: asyncio.AbstractEventLoop | None = None,
) -> bool:
    """Map terminal job-control signals onto *monitor*.

    SIGTSTP marks the view hidden and then stops the process as usual;
    SIGCONT marks it visible.  Returns False where the platform has no
    job control (e.g. Windows).
    """
    if not hasattr(signal, "SIGTSTP") or not hasattr(signal, "SIGCONT"):
        return False
    loop = loop or asyncio.get_running_loop()

    def _on_stop() -> None:
        monitor.mark_hidden()
        # back to SIG_DFL so the re-raised signal actually suspends us
        loop.remove_signal_handler(signal.SIGTSTP)
        signal.raise_signal(signal.SIGTSTP)

    def _on_continue() -> None:
        loop.add_signal_handler(signal.SIGTSTP, _on_stop)
        monitor.mark_visible()

    try:
        loop.add_signal_handler(signal.SIGTSTP, _on_stop)
        loop.add_signal_handler(signal.SIGCONT, _on_continue)
    except (NotImplementedError, RuntimeError) as exc:
        logger.debug("visibility_signals_unavailable", error=str(exc))
        return False
    return True
