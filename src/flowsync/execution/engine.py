"""SyncEngine Protocol - the boundary to the external sync engine.

Manifesto:
The orchestrator does not care how files are actually transferred. The
engine may be a sidecar process, a gRPC service or an in-memory fake;
``SyncEngine`` is a ``typing.Protocol``, so any object with the right
async methods satisfies it, no base class required.

ARCHITECTURE
────────────
::

    SyncEngine (Protocol)
      ├── .submit_unit(unit)                 ─ start work, return unit id
      ├── .cancel_unit(unit_id)              ─ best-effort cancellation
      ├── .delete_unit(unit_id)              ─ release engine bookkeeping
      ├── .query_unit_status(unit_id)        ─ fallback poll (may raise once discarded)
      ├── .fetch_logs_since(key, after_seq)  ─ sequenced gap recovery
      ├── .drain_logs(key)                   ─ coarse backlog, no sequence numbers
      └── .list_units()                      ─ stale temp-unit cleanup at startup

    Push notifications travel separately, on the EventBus:

      unit.started | unit.progress            payload: unit_id
      unit.completed | unit.failed | unit.cancelled
      log.entry                               payload: stream_key, seq, message

    Implementations:
      InMemorySyncEngine ─ scripted, in-process (testing / development)

Tags:
    flowsync, execution, engine, protocol, interface

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol, runtime_checkable

from flowsync.execution.unit import ExecutionUnit

__all__ = [
    "UnitState",
    "EdgeStatus",
    "UnitStatus",
    "LogEntry",
    "SyncEngine",
    "UNIT_STARTED",
    "UNIT_PROGRESS",
    "UNIT_COMPLETED",
    "UNIT_FAILED",
    "UNIT_CANCELLED",
    "LOG_ENTRY",
    "TERMINAL_EVENTS",
]

# ── Event types ──────────────────────────────────────────────────────────

UNIT_STARTED = "unit.started"
UNIT_PROGRESS = "unit.progress"
UNIT_COMPLETED = "unit.completed"
UNIT_FAILED = "unit.failed"
UNIT_CANCELLED = "unit.cancelled"
LOG_ENTRY = "log.entry"


class UnitState(str, Enum):
    """Engine-side state of an execution unit."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not UnitState.RUNNING


TERMINAL_EVENTS: dict[str, UnitState] = {
    UNIT_COMPLETED: UnitState.COMPLETED,
    UNIT_FAILED: UnitState.FAILED,
    UNIT_CANCELLED: UnitState.CANCELLED,
}


# ── Value types ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class EdgeStatus:
    edge_id: str
    status: UnitState
    message: str = ""


@dataclass(frozen=True)
class UnitStatus:
    """Result of :meth:`SyncEngine.query_unit_status`."""

    unit_id: str
    status: UnitState
    edge_statuses: tuple[EdgeStatus, ...] = ()
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass(frozen=True)
class LogEntry:
    """One sequenced line of engine output."""

    seq: int
    stream_key: str
    message: str
    level: str = "info"
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


# ── Protocol ─────────────────────────────────────────────────────────────


@runtime_checkable
class SyncEngine(Protocol):
    """Adapter to the external sync engine.

    Example implementation:
        >>> class NullEngine:
        ...     async def submit_unit(self, unit): return unit.id
        ...     async def cancel_unit(self, unit_id): pass
        ...     async def delete_unit(self, unit_id): pass
        ...     async def query_unit_status(self, unit_id):
        ...         return UnitStatus(unit_id, UnitState.COMPLETED)
        ...     async def fetch_logs_since(self, stream_key, after_seq): return []
        ...     async def drain_logs(self, stream_key): return []
        ...     async def list_units(self): return []
    """

    async def submit_unit(self, unit: ExecutionUnit) -> str:
        """Hand a unit to the engine; execution starts asynchronously.

        Returns:
            The engine's id for the unit

        Raises:
            SubmissionError: If the engine refuses the unit
        """
        ...

    async def cancel_unit(self, unit_id: str) -> None:
        """Request cancellation. A finished or unknown unit is a no-op."""
        ...

    async def delete_unit(self, unit_id: str) -> None:
        """Release engine-side bookkeeping for a finished or cancelled unit."""
        ...

    async def query_unit_status(self, unit_id: str) -> UnitStatus:
        """Current status of a unit.

        Raises:
            UnitNotFoundError: Once the engine has discarded the unit
        """
        ...

    async def fetch_logs_since(self, stream_key: str, after_seq: int) -> list[LogEntry]:
        """Sequenced entries with ``seq > after_seq``, ordered by sequence."""
        ...

    async def drain_logs(self, stream_key: str) -> list[str]:
        """Not-yet-delivered plain text for a stream (coarse channel)."""
        ...

    async def list_units(self) -> list[ExecutionUnit]:
        """Every unit the engine still holds."""
        ...
