"""Tests for the typer CLI — the non-interactive commands."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from delve import main as cli
from delve.main import app
from delve.tools.kv_store import MemoryKVStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Keep rich from wrapping table cells in the captured output."""
    monkeypatch.setattr(cli.console, "width", 200)


@pytest.fixture
def memory_backend():
    kv = MemoryKVStore()
    with patch("delve.research.store.build_kv_store", return_value=kv):
        yield kv


def test_version():
    from delve import __version__

    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_strategy_lists_every_task():
    result = runner.invoke(app, ["strategy"])
    assert result.exit_code == 0
    for task in ("PLANNING", "RESEARCH", "SYNTHESIS", "REFINEMENT"):
        assert task in result.stdout


def test_session_without_stored_session(memory_backend):
    result = runner.invoke(app, ["session"])
    assert result.exit_code == 0
    assert "No stored research session" in result.stdout


def test_session_shows_and_clears(memory_backend):
    import asyncio

    from delve.research.store import SESSION_KEY, SessionStore

    asyncio.run(SessionStore(kv=memory_backend).create_session("Group Theory", ["A", "B"]))

    shown = runner.invoke(app, ["session"])
    assert shown.exit_code == 0
    assert "Group Theory" in shown.stdout
    assert "plan_review" in shown.stdout

    cleared = runner.invoke(app, ["session", "--clear"])
    assert cleared.exit_code == 0
    assert SESSION_KEY not in memory_backend


def test_research_without_topic_or_session(memory_backend):
    result = runner.invoke(app, ["research"])
    assert result.exit_code == 1
    assert "No research session to resume" in result.stdout
