"""execute_with_retry — exponential-backoff retry combinator.

Wraps any zero-argument coroutine factory:

    result = await execute_with_retry(lambda: client.generate(req), max_retries=3)

Attempt n (1-based) that fails is followed by a wait of
``base_delay_ms * 2 ** (n - 1)`` — 1000 ms, 2000 ms, … with the defaults —
unless it was the last attempt, in which case the last error is re-raised
immediately.  :class:`~delve.engine.errors.NonRetryableError` subclasses
(configuration problems) are re-raised on the first occurrence.

The executor does not record performance.  Callers that want per-attempt
latency/outcome stats wrap the operation itself (see
``ResearchOrchestrator._timed_call``), so every retried attempt against a
model still informs future model selection.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from delve.engine.errors import NonRetryableError

logger = structlog.get_logger().bind(component="engine.retry")

T = TypeVar("T")

Sleeper = Callable[[float], Awaitable[None]]


def backoff_delay_ms(attempt: int, base_delay_ms: float) -> float:
    """Delay after failed *attempt* (1-based)."""
    return base_delay_ms * 2 ** (attempt - 1)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay_ms: float = 1000,
    *,
    sleep: Sleeper | None = None,
    label: str = "",
) -> T:
    """Run *operation* up to *max_retries* times with exponential backoff.

    Args:
        operation:     Zero-arg callable returning a fresh awaitable per attempt.
        max_retries:   Total attempts (must be >= 1).
        base_delay_ms: Wait after the first failure; doubles each time.
        sleep:         Async sleeper taking **seconds** (defaults to
                       ``asyncio.sleep``; inject a recorder in tests).
        label:         Free-form tag included in log events.

    Returns:
        The first successful result.

    Raises:
        The last error once all attempts fail, or a
        :class:`NonRetryableError` as soon as one is raised.
    """
    if max_retries < 1:
        raise ValueError("max_retries must be >= 1")
    sleeper = sleep or asyncio.sleep

    last_error: Exception | None = None
    for attempt in range(1, max_retries + 1):
        try:
            result = await operation()
            if attempt > 1:
                logger.info("retry_succeeded", label=label, attempt=attempt)
            return result
        except NonRetryableError:
            raise
        except Exception as exc:
            last_error = exc
            logger.warning(
                "retry_attempt_failed",
                label=label,
                attempt=attempt,
                max_retries=max_retries,
                error=str(exc),
            )
            if attempt < max_retries:
                delay_ms = backoff_delay_ms(attempt, base_delay_ms)
                await sleeper(delay_ms / 1000)

    assert last_error is not None
    raise last_error
