"""Bounded polling for asynchronous provider jobs.

poll_until() checks immediately, then at a fixed interval, until the check
reports completion, raises, the ceiling is exceeded (PollTimeoutError) or
the cancel event is set (OperationCancelledError). Between attempts the
coroutine suspends on the cancel event so other reconciliations keep
running and shutdown is noticed without waiting out the interval.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import OperationCancelledError, PollTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def poll_until(
    check: Callable[[], Awaitable[T | None]],
    interval_seconds: float,
    timeout_seconds: float,
    description: str,
    cancel_event: asyncio.Event | None = None,
) -> T:
    """Poll `check` until it returns a value other than None.

    Args:
        check: Coroutine factory; returns None to keep polling. Exceptions
            it raises abort the wait and propagate unchanged.
        interval_seconds: Delay between attempts.
        timeout_seconds: Ceiling for the whole wait.
        description: What is being waited for, used in errors and logs.
        cancel_event: When set, the wait aborts at the next opportunity.

    Returns:
        The first non-None value returned by `check`.

    Raises:
        PollTimeoutError: If the ceiling is exceeded.
        OperationCancelledError: If cancel_event is set.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_seconds
    attempts = 0

    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(f"Cancelled while waiting for {description}")

        attempts += 1
        result = await check()
        if result is not None:
            logger.debug(
                "Wait finished",
                extra={"description": description, "attempts": attempts},
            )
            return result

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise PollTimeoutError(
                f"Timed out after {timeout_seconds:g}s waiting for {description}"
            )

        delay = min(interval_seconds, remaining)
        if cancel_event is None:
            await asyncio.sleep(delay)
            continue

        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except TimeoutError:
            # Normal timeout, poll again
            continue
        raise OperationCancelledError(f"Cancelled while waiting for {description}")
