"""Cancellation-safe completion for orchestrator operations.

Operations are started as detached tasks the moment they are invoked. The
caller only awaits a shielded view of the task: cancelling the caller (e.g.
a client disconnect) leaves the task running to completion, and its outcome
is logged instead of returned.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Coroutine, Optional, Set, TypeVar

from .observability import log_debug, log_error


_T = TypeVar("_T")


class CompletionSink:
    """Track detached operation tasks and publish their results."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def submit(self, coro: Coroutine[Any, Any, _T], *, name: Optional[str] = None) -> "asyncio.Task[_T]":
        """Start ``coro`` now and keep a reference until it finishes."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(self, coro: Coroutine[Any, Any, _T], *, name: Optional[str] = None) -> _T:
        """Run ``coro`` detached and wait for its result.

        If the waiting caller is cancelled the operation keeps running.
        """
        task = self.submit(coro, name=name)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                log_debug(f"[COMPLETION] caller left, {task.get_name()} continues")
                task.add_done_callback(_report_abandoned)
            raise

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for every in-flight operation. Returns False on timeout."""
        pending = [task for task in self._tasks if not task.done()]
        if not pending:
            return True
        _done, still_pending = await asyncio.wait(pending, timeout=timeout)
        return not still_pending


def _report_abandoned(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = None
    with contextlib.suppress(asyncio.CancelledError):
        exc = task.exception()
    if exc is None:
        log_debug(f"[COMPLETION] {task.get_name()} finished after its caller left")
        return
    log_error(
        f"[COMPLETION] {task.get_name()} failed after its caller left: {exc}",
        error_type=type(exc).__name__,
    )
