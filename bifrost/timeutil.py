"""Wall-clock and waiting helpers."""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta

_MILLISECOND = timedelta(milliseconds=1)


def get_time() -> int:
    """Return the current Unix time in whole milliseconds."""
    return time.time_ns() // 1_000_000


def duration_to_ms(duration: timedelta) -> int:
    """Convert a duration to whole milliseconds, rounding down."""
    if not isinstance(duration, timedelta):
        raise TypeError(f"expected timedelta, got {type(duration).__name__}")
    return duration // _MILLISECOND


async def async_wait(duration: timedelta | float) -> None:
    """Sleep asynchronously for a duration given as timedelta or seconds."""
    seconds = duration.total_seconds() if isinstance(duration, timedelta) else float(duration)
    await asyncio.sleep(seconds)


async def async_wait_secs() -> None:
    """Sleep asynchronously for two seconds."""
    await async_wait(timedelta(seconds=2))