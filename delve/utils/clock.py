"""Wall-clock helpers — single source of truth for 'now'.

Every TTL, timeout and timestamp in Delve is expressed in epoch
milliseconds.  Components accept an optional ``clock`` callable that
defaults to :func:`now_ms`, so tests can drive time explicitly instead
of sleeping.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], int]


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def from_ms(epoch_ms: int) -> datetime:
    """Timezone-aware UTC datetime for an epoch-ms timestamp."""
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)


def age_human(epoch_ms: int, now: int | None = None) -> str:
    """Short relative age: 'just now', '12m ago', '3h ago', '2d ago'."""
    diff = (now if now is not None else now_ms()) - epoch_ms
    minutes = diff // 60_000
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"
