"""Coalescing timer for auto-save.

``trigger()`` (re)starts a pending timer; the callback runs once the
timer expires without another trigger. Bursts of edits collapse into a
single save.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from flowsync.core.logging import get_logger

logger = get_logger(__name__)

__all__ = ["Debouncer"]


class Debouncer:
    """Run an async callback once, ``delay`` seconds after the last trigger.

    Example::

        saver = Debouncer(store.save, delay=0.5)
        saver.trigger()
        saver.trigger()   # restarts the window
        await saver.flush()  # run now if anything is pending
    """

    def __init__(self, callback: Callable[[], Awaitable[None]], delay: float) -> None:
        self._callback = callback
        self._delay = delay
        self._task: asyncio.Task[None] | None = None
        self._pending = False
        self.fired = 0

    @property
    def pending(self) -> bool:
        return self._pending

    def trigger(self) -> None:
        """Mark work pending and restart the timer.

        Outside a running event loop the work stays pending until
        :meth:`flush`.
        """
        self._pending = True
        self._cancel_timer()
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("debounce.deferred_no_loop")
            return
        self._task = asyncio.create_task(self._wait_then_fire())

    async def flush(self) -> None:
        """Fire immediately if work is pending."""
        self._cancel_timer()
        if self._pending:
            await self._fire()

    def cancel(self) -> None:
        """Drop pending work without firing."""
        self._cancel_timer()
        self._pending = False

    async def _wait_then_fire(self) -> None:
        await asyncio.sleep(self._delay)
        self._task = None
        await self._fire()

    async def _fire(self) -> None:
        self._pending = False
        self.fired += 1
        await self._callback()

    def _cancel_timer(self) -> None:
        if self._task is not None and not self._task.done():
            if self._task is not asyncio.current_task():
                self._task.cancel()
        self._task = None
