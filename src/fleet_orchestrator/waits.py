"""
Cancellable waits for lifecycle stages.

A stage delay either runs to completion or is cut short by a stop request.
The stop predicate is polled at a fixed sub-interval so a stop is observed
within ``poll_interval`` instead of only at the end of the delay.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional


class WaitOutcome(Enum):
    ELAPSED = "elapsed"
    CANCELLED = "cancelled"


async def cancellable_wait(
    duration: float,
    is_cancelled: Callable[[], bool],
    poll_interval: float,
) -> WaitOutcome:
    """
    Wait ``duration`` seconds unless ``is_cancelled`` turns true first.

    A non-positive duration returns immediately (after one cancellation check).
    """
    if is_cancelled():
        return WaitOutcome.CANCELLED
    if duration <= 0:
        return WaitOutcome.ELAPSED

    loop = asyncio.get_running_loop()
    deadline = loop.time() + duration
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            return WaitOutcome.ELAPSED
        await asyncio.sleep(min(poll_interval, remaining))
        if is_cancelled():
            return WaitOutcome.CANCELLED


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    timeout: float,
    interval: float,
    is_cancelled: Optional[Callable[[], bool]] = None,
) -> bool:
    """
    Poll an async check until it returns True or ``timeout`` elapses.

    Returns False early once ``is_cancelled`` turns true; callers that pass it
    re-check their own flag to tell a cancellation from a timeout.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if is_cancelled is not None and is_cancelled():
            return False
        if await check():
            return True
        remaining = deadline - loop.time()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(interval, remaining))
