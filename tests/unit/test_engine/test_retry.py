"""Tests for execute_with_retry — backoff schedule, rethrow, non-retryable errors."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from delve.engine.errors import ConfigurationError, TransientCallError
from delve.engine.retry import backoff_delay_ms, execute_with_retry


def test_backoff_doubles():
    assert [backoff_delay_ms(n, 1000) for n in (1, 2, 3)] == [1000, 2000, 4000]


@pytest.mark.asyncio
async def test_first_success_does_not_wait(sleeper):
    op = AsyncMock(return_value="ok")
    assert await execute_with_retry(op, sleep=sleeper) == "ok"
    assert op.await_count == 1
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_fail_fail_succeed_waits_one_then_two_seconds(sleeper):
    op = AsyncMock(side_effect=[TransientCallError("a"), TransientCallError("b"), "ok"])
    assert await execute_with_retry(op, 3, 1000, sleep=sleeper) == "ok"
    assert op.await_count == 3
    assert sleeper.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_exhausted_rethrows_last_error_without_final_wait(sleeper):
    errors = [TransientCallError("first"), TransientCallError("second"), TransientCallError("third")]
    op = AsyncMock(side_effect=errors)
    with pytest.raises(TransientCallError, match="third"):
        await execute_with_retry(op, 3, 1000, sleep=sleeper)
    assert op.await_count == 3
    assert sleeper.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_configuration_error_is_not_retried(sleeper):
    op = AsyncMock(side_effect=ConfigurationError("no key"))
    with pytest.raises(ConfigurationError):
        await execute_with_retry(op, 3, 1000, sleep=sleeper)
    assert op.await_count == 1
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_single_attempt_never_sleeps(sleeper):
    op = AsyncMock(side_effect=ValueError("bad"))
    with pytest.raises(ValueError):
        await execute_with_retry(op, 1, 1000, sleep=sleeper)
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_zero_attempts_is_rejected():
    with pytest.raises(ValueError):
        await execute_with_retry(AsyncMock(), 0)
