"""Tests for VisibilityMonitor — advisories are informational only."""

from __future__ import annotations

import asyncio
import signal
from unittest.mock import MagicMock

import pytest

from delve.research.visibility import (
    HIDDEN_TOO_LONG_MS,
    VisibilityMonitor,
    install_signal_handlers,
)


def test_visible_by_default(clock):
    monitor = VisibilityMonitor(clock=clock)
    assert monitor.is_visible
    assert monitor.hidden_duration_ms() == 0
    assert not monitor.is_hidden_too_long()


def test_hidden_with_active_research_publishes_advisory(clock):
    received = []
    monitor = VisibilityMonitor(probe=lambda: ("Group Theory", 40), clock=clock)
    monitor.subscribe(received.append)

    advisory = monitor.mark_hidden()

    assert advisory is not None
    assert received == [advisory]
    assert advisory.topic == "Group Theory"
    assert advisory.progress == 40
    assert "40%" in advisory.message
    assert not monitor.is_visible


def test_hidden_without_active_research_is_silent(clock):
    listener = MagicMock()
    monitor = VisibilityMonitor(probe=lambda: None, clock=clock)
    monitor.subscribe(listener)
    assert monitor.mark_hidden() is None
    listener.assert_not_called()


def test_repeated_hide_publishes_once(clock):
    listener = MagicMock()
    monitor = VisibilityMonitor(probe=lambda: ("T", 0), clock=clock)
    monitor.subscribe(listener)
    monitor.mark_hidden()
    clock.advance(1000)
    monitor.mark_hidden()
    assert listener.call_count == 1
    assert monitor.hidden_duration_ms() == 1000


def test_hidden_too_long_after_five_minutes(clock):
    monitor = VisibilityMonitor(clock=clock)
    monitor.mark_hidden()
    clock.advance(HIDDEN_TOO_LONG_MS)
    assert not monitor.is_hidden_too_long()
    clock.advance(1)
    assert monitor.is_hidden_too_long()
    assert monitor.is_hidden_too_long(max_hidden_ms=10 * HIDDEN_TOO_LONG_MS) is False


def test_mark_visible_reports_hidden_time(clock):
    monitor = VisibilityMonitor(clock=clock)
    assert monitor.mark_visible() == 0
    monitor.mark_hidden()
    clock.advance(7000)
    assert monitor.mark_visible() == 7000
    assert monitor.is_visible


@pytest.mark.skipif(not hasattr(signal, "SIGTSTP"), reason="POSIX job control only")
@pytest.mark.asyncio
async def test_install_signal_handlers_registers_job_control(clock):
    monitor = VisibilityMonitor(clock=clock)
    loop = asyncio.get_running_loop()
    try:
        assert install_signal_handlers(monitor, loop) is True
    finally:
        loop.remove_signal_handler(signal.SIGTSTP)
        loop.remove_signal_handler(signal.SIGCONT)


def test_install_signal_handlers_reports_unsupported_loop(clock):
    loop = MagicMock()
    loop.add_signal_handler.side_effect = NotImplementedError
    assert install_signal_handlers(VisibilityMonitor(clock=clock), loop) is False
