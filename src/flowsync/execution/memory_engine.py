"""In-memory sync engine for testing and development.

Implements :class:`~flowsync.execution.engine.SyncEngine` without moving
any files. Units are tracked in dicts; what happens after submission is
scripted by an optional async *behavior* (or driven by hand through
:meth:`InMemorySyncEngine.emit_log` / :meth:`InMemorySyncEngine.finish`).

The transport can be made unreliable on purpose: any event type matching
``dropped_events`` is recorded but never published, which is exactly the
situation the completion fallback poll and log gap recovery exist for.

Example::

    engine = InMemorySyncEngine(bus)

    async def succeed(unit):
        await engine.emit_log(unit.id, "Transferred: 3 files")
        await engine.finish(unit.id, UnitState.COMPLETED)

    engine.behavior = succeed
    unit_id = await engine.submit_unit(build_unit(op))

NOT for production (no transfer, state lost on exit).
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine, Iterable
from datetime import UTC, datetime
from typing import Any

from flowsync.core.errors import SubmissionError, UnitNotFoundError
from flowsync.core.events import Event, EventBus
from flowsync.core.logging import get_logger
from flowsync.execution.engine import (
    LOG_ENTRY,
    TERMINAL_EVENTS,
    UNIT_PROGRESS,
    UNIT_STARTED,
    EdgeStatus,
    LogEntry,
    UnitState,
    UnitStatus,
)
from flowsync.execution.log_buffer import DEFAULT_CAPACITY, SequencedLogBuffer
from flowsync.execution.unit import ExecutionUnit
from flowsync.flows.models import SyncAction

logger = get_logger(__name__)

__all__ = ["InMemorySyncEngine", "UnitBehavior"]

UnitBehavior = Callable[[ExecutionUnit], Coroutine[Any, Any, None]]

_EVENT_SOURCE = "memory-engine"
_TERMINAL_EVENT_BY_STATE = {state: event_type for event_type, state in TERMINAL_EVENTS.items()}


class InMemorySyncEngine:
    """Scripted in-process engine.

    Parameters
    ----------
    bus : EventBus | None
        Where ``unit.*`` and ``log.entry`` events are published. Without a
        bus the engine is poll-only.
    behavior : UnitBehavior | None
        Coroutine run as a task after each successful submission.
    dropped_events : Iterable[str]
        Event type patterns (``unit.completed``, ``log.*``, ``*``) that are
        silently lost instead of published.
    log_capacity : int
        Capacity of the sequenced log buffer.
    """

    name = "memory"

    def __init__(
        self,
        bus: EventBus | None = None,
        *,
        behavior: UnitBehavior | None = None,
        dropped_events: Iterable[str] = (),
        log_capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        self.bus = bus
        self.behavior = behavior
        self.dropped_events: set[str] = set(dropped_events)
        self.logs = SequencedLogBuffer(capacity=log_capacity)

        self._units: dict[str, ExecutionUnit] = {}
        self._statuses: dict[str, UnitStatus] = {}
        self._backlog: dict[str, list[str]] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

        self.finished: dict[str, UnitState] = {}
        self.calls: list[tuple[str, str]] = []
        self.dropped: list[Event] = []

        # Failure injection
        self.submit_error: Exception | None = None
        self.cancel_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.query_error: Exception | None = None

    # ── SyncEngine protocol ──────────────────────────────────────────

    async def submit_unit(self, unit: ExecutionUnit) -> str:
        self.calls.append(("submit", unit.id))
        if self.submit_error is not None:
            raise self.submit_error
        self._validate(unit)
        if unit.id in self._statuses:
            raise SubmissionError(f"Unit '{unit.id}' is already executing").with_context(
                unit_id=unit.id
            )

        self._units[unit.id] = unit
        self._statuses[unit.id] = UnitStatus(
            unit_id=unit.id,
            status=UnitState.RUNNING,
            edge_statuses=tuple(EdgeStatus(edge.id, UnitState.RUNNING) for edge in unit.edges),
            started_at=datetime.now(UTC),
        )
        logger.info("memory_engine.submitted", unit_id=unit.id, name=unit.name)
        await self._publish(UNIT_STARTED, {"unit_id": unit.id})

        if self.behavior is not None:
            self._tasks[unit.id] = asyncio.create_task(self.behavior(unit))
        return unit.id

    async def cancel_unit(self, unit_id: str) -> None:
        self.calls.append(("cancel", unit_id))
        if self.cancel_error is not None:
            raise self.cancel_error
        if unit_id not in self._statuses:
            return
        task = self._tasks.pop(unit_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        await self.finish(unit_id, UnitState.CANCELLED, "Execution cancelled")

    async def delete_unit(self, unit_id: str) -> None:
        self.calls.append(("delete", unit_id))
        if self.delete_error is not None:
            raise self.delete_error
        self._units.pop(unit_id, None)
        self._statuses.pop(unit_id, None)
        self._backlog.pop(unit_id, None)
        task = self._tasks.pop(unit_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def query_unit_status(self, unit_id: str) -> UnitStatus:
        self.calls.append(("query", unit_id))
        if self.query_error is not None:
            raise self.query_error
        status = self._statuses.get(unit_id)
        if status is None:
            raise UnitNotFoundError(unit_id)
        return status

    async def fetch_logs_since(self, stream_key: str, after_seq: int) -> list[LogEntry]:
        self.calls.append(("fetch_logs", stream_key))
        return self.logs.since(stream_key, after_seq)

    async def drain_logs(self, stream_key: str) -> list[str]:
        return self._backlog.pop(stream_key, [])

    async def list_units(self) -> list[ExecutionUnit]:
        return list(self._units.values())

    # ── Scripting hooks ──────────────────────────────────────────────

    async def emit_log(self, unit_id: str, message: str, level: str = "info") -> LogEntry:
        """Append a sequenced line for *unit_id* and publish it as ``log.entry``."""
        entry = self.logs.append(unit_id, message, level)
        self._backlog.setdefault(unit_id, []).append(message)
        await self._publish(
            LOG_ENTRY,
            {"stream_key": unit_id, "seq": entry.seq, "message": message, "level": level},
        )
        return entry

    async def emit_raw(self, stream_key: str, seq: int, message: str) -> None:
        """Publish a ``log.entry`` event with an arbitrary sequence number (no buffering)."""
        await self._publish(LOG_ENTRY, {"stream_key": stream_key, "seq": seq, "message": message})

    async def emit_progress(self, unit_id: str, **stats: Any) -> None:
        await self._publish(UNIT_PROGRESS, {"unit_id": unit_id, **stats})

    async def finish(self, unit_id: str, status: UnitState, message: str = "") -> None:
        """Move a running unit to a terminal state.

        The unit's status bookkeeping is discarded first (later status
        queries raise ``UnitNotFoundError``), then the terminal event is
        published. Finishing a unit that is not running is a no-op.
        """
        if not status.is_terminal:
            raise ValueError(f"finish() needs a terminal state, got {status.value}")
        if unit_id not in self._statuses:
            return
        del self._statuses[unit_id]
        self.finished[unit_id] = status
        logger.info("memory_engine.finished", unit_id=unit_id, status=status.value)
        payload: dict[str, Any] = {"unit_id": unit_id, "status": status.value}
        if message:
            payload["message"] = message
        await self._publish(_TERMINAL_EVENT_BY_STATE[status], payload)

    async def close(self) -> None:
        """Cancel scripted behaviors still in flight."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # ── Introspection ────────────────────────────────────────────────

    def is_live(self, unit_id: str) -> bool:
        return unit_id in self._statuses

    def calls_for(self, kind: str) -> list[str]:
        """Unit ids of recorded calls of one kind (``submit``, ``delete``, ...)."""
        return [unit_id for call, unit_id in self.calls if call == kind]

    @property
    def unit_count(self) -> int:
        return len(self._units)

    # ── Internals ────────────────────────────────────────────────────

    def _validate(self, unit: ExecutionUnit) -> None:
        if not unit.id:
            raise SubmissionError("Unit id is required")
        node_ids: set[str] = set()
        for node in unit.nodes:
            if not node.id:
                raise SubmissionError("Node id is required").with_context(unit_id=unit.id)
            if node.id in node_ids:
                raise SubmissionError(f"Duplicate node id: {node.id}").with_context(unit_id=unit.id)
            node_ids.add(node.id)
        for edge in unit.edges:
            if edge.source_id not in node_ids or edge.target_id not in node_ids:
                raise SubmissionError(f"Edge {edge.id} references an unknown node").with_context(
                    unit_id=unit.id
                )
            if edge.source_id == edge.target_id:
                raise SubmissionError(f"Edge {edge.id} is a self-loop").with_context(
                    unit_id=unit.id
                )
            if not isinstance(edge.sync_config.action, SyncAction):
                raise SubmissionError(f"Unknown sync action on edge {edge.id}").with_context(
                    unit_id=unit.id
                )

    async def _publish(self, event_type: str, payload: dict[str, Any]) -> None:
        event = Event(event_type=event_type, source=_EVENT_SOURCE, payload=payload)
        if event.matches(*self.dropped_events):
            self.dropped.append(event)
            logger.debug("memory_engine.event_dropped", event_type=event_type)
            return
        if self.bus is not None:
            await self.bus.publish(event)

