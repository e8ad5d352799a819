"""Deadline guard for agent invocations.

:func:`with_timeout` stops *waiting* for an operation once the deadline
passes but never cancels it.  The abandoned task keeps running on the event
loop, so an agent that overruns its deadline may still edit files or create
commits afterwards.  Callers must treat a timeout as "outcome unknown", not
as "nothing happened".
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Strong references to abandoned operations; the event loop only keeps weak ones.
_ABANDONED: set[asyncio.Future] = set()


class InvocationTimeoutError(TimeoutError):
    """Raised when a guarded operation does not settle before its deadline."""

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Operation timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


async def with_timeout(operation: Awaitable[T], ms: int) -> T:
    """Await *operation* for at most *ms* milliseconds.

    Raises :class:`InvocationTimeoutError` on expiry; the operation itself
    is left running in the background.
    """
    if ms <= 0:
        raise ValueError("timeout must be a positive number of milliseconds")

    future = asyncio.ensure_future(operation)
    done, _pending = await asyncio.wait({future}, timeout=ms / 1000)
    if future in done:
        return future.result()

    _abandon(future, ms)
    raise InvocationTimeoutError(ms)


def _abandon(future: asyncio.Future, ms: int) -> None:
    _ABANDONED.add(future)
    future.add_done_callback(_on_abandoned_done)
    logger.warning(
        "Stopped waiting after %dms; the operation keeps running in the background",
        ms,
    )


def _on_abandoned_done(future: asyncio.Future) -> None:
    _ABANDONED.discard(future)
    if future.cancelled():
        logger.info("Abandoned operation was cancelled")
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("Abandoned operation failed after its deadline: %s", exc)
    else:
        logger.info("Abandoned operation finished after its deadline")


def abandoned_count() -> int:
    """Number of timed-out operations still running."""
    return len(_ABANDONED)
