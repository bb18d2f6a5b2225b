"""
agent/utils.py — Shared Agent Utilities

Small async helpers shared across the agent package:
  - await_cancellable()  await a collaborator, abandoning it if the run is cancelled
  - cancellable_sleep()  backoff wait that wakes early on run cancellation
  - fire_and_forget()    background task for async event listeners
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional

from turnpilot.exceptions import RunCancelledError
from turnpilot.observability.logger import get_logger

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation helpers
# ─────────────────────────────────────────────────────────────────────────────


async def await_cancellable(
    awaitable: Awaitable[Any],
    cancel_event: Optional[asyncio.Event],
    label: str = "operation",
) -> Any:
    """
    Await ``awaitable`` unless ``cancel_event`` fires first.

    Raises RunCancelledError when the event wins. The abandoned task is cancelled.
    """
    if cancel_event is None:
        return await awaitable
    if cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise RunCancelledError(f"{label} cancelled before start")

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()

    if task in done:
        return task.result()
    raise RunCancelledError(f"{label} cancelled")


async def cancellable_sleep(seconds: float, cancel_event: Optional[asyncio.Event]) -> None:
    """Sleep for ``seconds``. Raises RunCancelledError if the run is cancelled meanwhile."""
    if seconds <= 0:
        return
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise RunCancelledError("backoff wait cancelled")


# ─────────────────────────────────────────────────────────────────────────────
# Fire-and-forget helper
# ─────────────────────────────────────────────────────────────────────────────

# Strong references keep asyncio from collecting tasks mid-flight.
# Entries are removed in the done-callback.
_BG_TASKS: set[asyncio.Task] = set()


def fire_and_forget(coro, label: str = "bg_task") -> asyncio.Task:
    """
    Schedule a coroutine as a background task whose failure is logged, never raised.
    """
    task = asyncio.ensure_future(coro)
    _BG_TASKS.add(task)

    def _on_done(t: asyncio.Task) -> None:
        _BG_TASKS.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            log.warning(
                "bg_task.failed",
                label=label,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    task.add_done_callback(_on_done)
    return task
