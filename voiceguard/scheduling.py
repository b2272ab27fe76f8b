"""Periodic background tasks for the engine, controller, and housekeeping loops."""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Union[Any, Awaitable[Any]]]


class PeriodicTask:
    """Runs a callback every ``interval`` seconds on the running event loop.

    The callback may be a plain function or a coroutine function. Errors
    raised by the callback are logged and the loop keeps going.

    Example:
        task = PeriodicTask("alert-evaluation", engine.evaluate_all_rules, 30.0)
        await task.start()
        ...
        await task.stop()
    """

    def __init__(
        self,
        name: str,
        callback: TickCallback,
        interval: float,
        run_immediately: bool = True,
    ):
        self.name = name
        self.interval = interval
        self.run_immediately = run_immediately
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.ticks = 0
        self.errors = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the loop. Calling start on a running task is a no-op."""
        if self._running:
            return
        self._running = True
        if self.run_immediately:
            await self.run_once()
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.debug("Periodic task %s started (interval=%ss)", self.name, self.interval)

    async def stop(self) -> None:
        """Cancel the loop. Calling stop on a stopped task is a no-op."""
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.debug("Periodic task %s stopped", self.name)

    async def run_once(self) -> None:
        """Invoke the callback once, logging instead of raising on failure."""
        self.ticks += 1
        try:
            result = self._callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.errors += 1
            logger.error("Periodic task %s failed: %s", self.name, e, exc_info=True)

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                if self._running:
                    await self.run_once()
            except asyncio.CancelledError:
                break
