"""At-most-one-in-flight execution with coalesced follow-ups.

``CoalescingRunner`` wraps an async pass.  A request made while a pass is
running only sets a flag; when the running pass finishes, exactly one
follow-up pass starts no matter how many requests arrived.  A failed pass
releases the runner so the next request can start a new one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

logger = logging.getLogger(__name__)


class RunnerState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    QUEUED = "queued"


class CoalescingRunner:
    """Serialize and coalesce executions of *func*.

    Args:
        name: Label used in log messages.
        func: Coroutine function performing one pass.
    """

    def __init__(
        self, name: str, func: Callable[[], Awaitable[object]]
    ) -> None:
        self.name = name
        self._func = func
        self._task: asyncio.Task[None] | None = None
        self._rerun = False
        self._disposed = False
        self.passes = 0

    @property
    def state(self) -> RunnerState:
        if self._task is None:
            return RunnerState.IDLE
        return RunnerState.QUEUED if self._rerun else RunnerState.SYNCING

    def request(self) -> asyncio.Task[None] | None:
        """Start a pass, or queue one follow-up if a pass is running.

        Returns:
            The task running the current pass chain, or ``None`` when the
            runner is disposed.
        """
        if self._disposed:
            return None
        if self._task is not None:
            if not self._rerun:
                logger.debug("%s: pass in flight, queueing follow-up", self.name)
            self._rerun = True
            return self._task
        self._task = asyncio.get_running_loop().create_task(self._run_chain())
        self._task.add_done_callback(self._log_failure)
        return self._task

    async def run(self) -> None:
        """Request a pass and wait for the pass chain to finish.

        Raises:
            Exception: Whatever the last pass raised.
        """
        task = self.request()
        if task is not None:
            await asyncio.shield(task)

    async def wait_idle(self) -> None:
        """Wait until no pass is running, ignoring pass failures."""
        while self._task is not None:
            await asyncio.wait({self._task})

    def dispose(self) -> None:
        """Stop starting passes; a running pass finishes on its own."""
        self._disposed = True
        self._rerun = False

    async def _run_chain(self) -> None:
        try:
            while True:
                self._rerun = False
                self.passes += 1
                try:
                    await self._func()
                except Exception:
                    if not self._rerun or self._disposed:
                        raise
                    logger.exception(
                        "%s: pass failed, running queued follow-up", self.name
                    )
                if not self._rerun or self._disposed:
                    break
        finally:
            self._task = None
            self._rerun = False

    def _log_failure(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s: pass failed: %s", self.name, exc, exc_info=exc)
