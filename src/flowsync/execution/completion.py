"""Completion Tracker - exactly-once terminal status per execution unit.

WHY
───
The engine announces terminal states on the event bus, but events can be
dropped. Polling alone is slow and, once a unit finishes, the engine
may discard it so status queries start failing. The tracker races both
sources and lets whichever fires first win, once.

ARCHITECTURE
────────────
::

    expect(unit_id)                       ─ register future (before submit)
    await_terminal(unit_id) ──────────────┐
                                          ▼
            ┌──────────── _Wait(future, poll_task, timer) ────────────┐
            │                                                         │
      on_event(unit.completed|failed|cancelled)        _poll(): every interval
            │                                           query_unit_status()
            │                                             status != running  → resolve
            │                                             N query errors     → resolve COMPLETED
            ▼                                                         ▼
                         resolve(unit_id, state) ── first call wins,
                         cancels poll task and timeout timer

    Optional ``timeout`` resolves FAILED when it expires.

Late signals for a resolved or unknown unit are ignored.

Tags:
    flowsync, execution, completion, polling, future

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from flowsync.core.events import Event
from flowsync.core.logging import get_logger
from flowsync.core.settings import get_settings
from flowsync.execution.engine import TERMINAL_EVENTS, SyncEngine, UnitState

logger = get_logger(__name__)

__all__ = ["CompletionTracker"]


@dataclass
class _Wait:
    unit_id: str
    future: asyncio.Future[UnitState]
    poll_task: asyncio.Task[None] | None = None
    timer: asyncio.TimerHandle | None = None
    query_errors: int = 0
    source: str | None = None


_FROM_SETTINGS = object()


class CompletionTracker:
    """Resolve one terminal-status wait per unit from events or polling.

    Parameters
    ----------
    engine : SyncEngine
        Queried by the fallback poll.
    poll_interval : float | None
        Seconds between status queries (default from settings).
    error_threshold : int | None
        Consecutive failed queries treated as implicit completion.
    timeout : float | None
        Upper bound on a wait; ``None`` waits indefinitely. When omitted,
        ``completion_timeout`` from settings applies.
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        poll_interval: float | None = None,
        error_threshold: int | None = None,
        timeout: float | None | object = _FROM_SETTINGS,
    ) -> None:
        settings = get_settings()
        self._engine = engine
        self._poll_interval = (
            poll_interval if poll_interval is not None else settings.completion_poll_interval
        )
        self._error_threshold = (
            error_threshold
            if error_threshold is not None
            else settings.completion_poll_error_threshold
        )
        self._timeout = settings.completion_timeout if timeout is _FROM_SETTINGS else timeout
        self._waits: dict[str, _Wait] = {}

    # ── Registration ─────────────────────────────────────────────────

    def expect(self, unit_id: str) -> None:
        """Register a wait so events arriving before :meth:`await_terminal` are kept."""
        if unit_id in self._waits:
            return
        loop = asyncio.get_running_loop()
        self._waits[unit_id] = _Wait(unit_id=unit_id, future=loop.create_future())
        logger.debug("completion.expected", unit_id=unit_id)

    async def await_terminal(self, unit_id: str) -> UnitState:
        """Wait for the unit's terminal state.

        Starts the fallback poll (and the timeout, if configured). The
        registration is dropped when this returns or is cancelled.
        """
        self.expect(unit_id)
        wait = self._waits[unit_id]
        if not wait.future.done():
            if wait.poll_task is None:
                wait.poll_task = asyncio.create_task(self._poll(wait))
            if self._timeout is not None and wait.timer is None:
                wait.timer = asyncio.get_running_loop().call_later(
                    self._timeout, self._expire, unit_id
                )
        try:
            return await wait.future
        finally:
            self.discard(unit_id)

    def discard(self, unit_id: str) -> None:
        """Forget a wait and stop its timers (pending futures are cancelled)."""
        wait = self._waits.pop(unit_id, None)
        if wait is None:
            return
        self._stop_timers(wait)
        if not wait.future.done():
            wait.future.cancel()

    # ── Signal sources ───────────────────────────────────────────────

    def resolve(self, unit_id: str, state: UnitState, *, source: str = "manual") -> bool:
        """Resolve a wait. Returns True only for the call that actually resolved it."""
        wait = self._waits.get(unit_id)
        if wait is None or wait.future.done():
            logger.debug(
                "completion.signal_ignored", unit_id=unit_id, state=state.value, source=source
            )
            return False
        wait.future.set_result(state)
        wait.source = source
        self._stop_timers(wait)
        logger.info("completion.resolved", unit_id=unit_id, state=state.value, source=source)
        return True

    async def on_event(self, event: Event) -> None:
        """EventBus handler for ``unit.*`` events."""
        state = TERMINAL_EVENTS.get(event.event_type)
        unit_id = event.unit_id
        if state is None or not unit_id:
            return
        self.resolve(unit_id, state, source="event")

    async def _poll(self, wait: _Wait) -> None:
        while not wait.future.done():
            await asyncio.sleep(self._poll_interval)
            if wait.future.done():
                return
            try:
                status = await self._engine.query_unit_status(wait.unit_id)
            except Exception as e:
                wait.query_errors += 1
                logger.warning(
                    "completion.poll_failed",
                    unit_id=wait.unit_id,
                    attempt=wait.query_errors,
                    error=str(e),
                )
                if wait.query_errors >= self._error_threshold:
                    # The engine drops bookkeeping for finished units.
                    self.resolve(wait.unit_id, UnitState.COMPLETED, source="poll_error")
                    return
                continue
            wait.query_errors = 0
            if status.status is not UnitState.RUNNING:
                self.resolve(wait.unit_id, UnitState(status.status), source="poll")
                return

    def _expire(self, unit_id: str) -> None:
        if self.resolve(unit_id, UnitState.FAILED, source="timeout"):
            logger.warning("completion.timed_out", unit_id=unit_id, timeout=self._timeout)

    def _stop_timers(self, wait: _Wait) -> None:
        if wait.timer is not None:
            wait.timer.cancel()
            wait.timer = None
        task = wait.poll_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ── Introspection ────────────────────────────────────────────────

    @property
    def pending_count(self) -> int:
        """Registered waits that have not resolved yet."""
        return sum(1 for wait in self._waits.values() if not wait.future.done())

    def is_expected(self, unit_id: str) -> bool:
        return unit_id in self._waits

    async def close(self) -> None:
        """Cancel every outstanding wait."""
        for unit_id in list(self._waits):
            self.discard(unit_id)
