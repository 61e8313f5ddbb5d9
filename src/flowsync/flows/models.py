"""Flow and operation data model.

A **flow** is an ordered list of **operations**; each operation syncs one
source remote path to one target remote path with its own
:class:`SyncConfig`. Operations run strictly in order.

All model objects are frozen dataclasses holding tuples, so a published
snapshot can never be changed in place. Edits go through
``dataclasses.replace`` (see :mod:`flowsync.flows.store`).

Status transitions are guarded by explicit tables, in the same way the
execution layer guards run lifecycles::

    Flow:       idle ─► running ─► completed | failed | cancelled
                                ▲                  │
                                └──── re-run ──────┘

    Operation:  idle/pending ─► running ─► completed | failed | cancelled

Tags:
    flowsync, flows, model, state-machine, dataclass
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from flowsync.core.errors import InvalidTransitionError

__all__ = [
    "SyncAction",
    "SyncConfig",
    "FlowStatus",
    "OperationStatus",
    "Operation",
    "Flow",
    "DragData",
    "FlowsState",
    "FLOW_VALID_TRANSITIONS",
    "OPERATION_VALID_TRANSITIONS",
    "validate_flow_transition",
    "validate_operation_transition",
    "generate_id",
    "new_flow",
    "new_operation",
    "append_logs",
    "reset_runtime",
    "flow_to_record",
    "flow_from_record",
]


def generate_id() -> str:
    """Millisecond timestamp plus a random suffix, e.g. ``1718000000000-3f9a1c2b7``."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


# =============================================================================
# SYNC CONFIG
# =============================================================================


class SyncAction(str, Enum):
    """Direction of a sync operation."""

    PUSH = "push"
    PULL = "pull"
    BI = "bi"  # bidirectional
    BI_RESYNC = "bi-resync"  # bidirectional, full resync


@dataclass(frozen=True)
class SyncConfig:
    """Engine options for one operation.

    The core never interprets these beyond ``action``; they are copied
    verbatim onto the execution unit's edge. Knobs without a dedicated
    field (bandwidth schedules, retry counts, filter files, ...) live in
    ``extra``.
    """

    action: SyncAction = SyncAction.PUSH
    parallel: int | None = None
    bandwidth: str | None = None
    included_paths: tuple[str, ...] = ()
    excluded_paths: tuple[str, ...] = ()
    conflict_resolution: str | None = None
    dry_run: bool = False
    extra: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"action": self.action.value}
        if self.parallel is not None:
            data["parallel"] = self.parallel
        if self.bandwidth is not None:
            data["bandwidth"] = self.bandwidth
        if self.included_paths:
            data["included_paths"] = list(self.included_paths)
        if self.excluded_paths:
            data["excluded_paths"] = list(self.excluded_paths)
        if self.conflict_resolution is not None:
            data["conflict_resolution"] = self.conflict_resolution
        if self.dry_run:
            data["dry_run"] = True
        if self.extra:
            data["extra"] = dict(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> SyncConfig:
        if not data:
            return cls()
        return cls(
            action=SyncAction(data.get("action", SyncAction.PUSH.value)),
            parallel=data.get("parallel"),
            bandwidth=data.get("bandwidth"),
            included_paths=tuple(data.get("included_paths") or ()),
            excluded_paths=tuple(data.get("excluded_paths") or ()),
            conflict_resolution=data.get("conflict_resolution"),
            dry_run=bool(data.get("dry_run", False)),
            extra=dict(data.get("extra") or {}),
        )


# =============================================================================
# STATUS STATE MACHINES
# =============================================================================


class FlowStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (FlowStatus.COMPLETED, FlowStatus.FAILED, FlowStatus.CANCELLED)


class OperationStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            OperationStatus.COMPLETED,
            OperationStatus.FAILED,
            OperationStatus.CANCELLED,
        )


FLOW_VALID_TRANSITIONS: dict[FlowStatus, frozenset[FlowStatus]] = {
    FlowStatus.IDLE: frozenset({FlowStatus.RUNNING}),
    FlowStatus.RUNNING: frozenset({
        FlowStatus.COMPLETED,
        FlowStatus.FAILED,
        FlowStatus.CANCELLED,
    }),
    FlowStatus.COMPLETED: frozenset({FlowStatus.RUNNING}),  # re-run
    FlowStatus.FAILED: frozenset({FlowStatus.RUNNING}),  # re-run
    FlowStatus.CANCELLED: frozenset({FlowStatus.RUNNING}),  # re-run
}

_OPERATION_RESTARTS = frozenset({
    OperationStatus.PENDING,
    OperationStatus.RUNNING,
    OperationStatus.IDLE,
})

OPERATION_VALID_TRANSITIONS: dict[OperationStatus, frozenset[OperationStatus]] = {
    OperationStatus.IDLE: _OPERATION_RESTARTS | {OperationStatus.CANCELLED},
    OperationStatus.PENDING: _OPERATION_RESTARTS | {OperationStatus.CANCELLED},
    OperationStatus.RUNNING: frozenset({
        OperationStatus.COMPLETED,
        OperationStatus.FAILED,
        OperationStatus.CANCELLED,
    }),
    OperationStatus.COMPLETED: _OPERATION_RESTARTS,
    OperationStatus.FAILED: _OPERATION_RESTARTS,
    OperationStatus.CANCELLED: _OPERATION_RESTARTS,
}


def validate_flow_transition(current: FlowStatus, target: FlowStatus) -> None:
    """Raise :class:`InvalidTransitionError` unless *current* → *target* is allowed.

    A transition to the same status is always allowed (no-op).

    Example:
        >>> validate_flow_transition(FlowStatus.RUNNING, FlowStatus.COMPLETED)
        >>> validate_flow_transition(FlowStatus.RUNNING, FlowStatus.IDLE)
        Traceback (most recent call last):
            ...
        flowsync.core.errors.InvalidTransitionError: Invalid FlowStatus transition: running → idle
    """
    if current == target:
        return
    if target not in FLOW_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value, "FlowStatus")


def validate_operation_transition(current: OperationStatus, target: OperationStatus) -> None:
    """Operation counterpart of :func:`validate_flow_transition`."""
    if current == target:
        return
    if target not in OPERATION_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value, "OperationStatus")


# =============================================================================
# ENTITIES
# =============================================================================


@dataclass(frozen=True)
class Operation:
    """One source → target sync step."""

    id: str
    source_remote: str = ""
    source_path: str = "/"
    target_remote: str = ""
    target_path: str = "/"
    sync_config: SyncConfig = field(default_factory=SyncConfig)
    status: OperationStatus = OperationStatus.IDLE
    logs: tuple[str, ...] = ()
    is_expanded: bool = False

    @property
    def is_complete(self) -> bool:
        """True when both remotes are set (paths default to the remote root)."""
        return bool(self.source_remote) and bool(self.target_remote)


@dataclass(frozen=True)
class Flow:
    """An ordered sequence of operations executed one at a time."""

    id: str
    name: str | None = None
    operations: tuple[Operation, ...] = ()
    is_collapsed: bool = False
    schedule_enabled: bool = False
    cron_expr: str | None = None
    status: FlowStatus = FlowStatus.IDLE

    def index_of(self, operation_id: str) -> int:
        """Position of an operation, or -1."""
        for index, operation in enumerate(self.operations):
            if operation.id == operation_id:
                return index
        return -1


@dataclass(frozen=True)
class DragData:
    """An open reorder/move gesture. Never persisted."""

    source_flow_id: str
    operation_index: int
    count: int = 1


@dataclass(frozen=True)
class FlowsState:
    """Immutable snapshot published by the store."""

    flows: tuple[Flow, ...] = ()
    drag: DragData | None = None

    @property
    def is_dragging(self) -> bool:
        return self.drag is not None

    def find(self, flow_id: str) -> Flow | None:
        for flow in self.flows:
            if flow.id == flow_id:
                return flow
        return None


# =============================================================================
# FACTORIES & HELPERS
# =============================================================================


def new_operation(
    source_remote: str = "",
    target_remote: str = "",
    *,
    source_path: str = "/",
    target_path: str = "/",
    sync_config: SyncConfig | None = None,
) -> Operation:
    return Operation(
        id=f"op-{generate_id()}",
        source_remote=source_remote,
        source_path=source_path,
        target_remote=target_remote,
        target_path=target_path,
        sync_config=sync_config or SyncConfig(),
    )


def new_flow(name: str | None = None, operations: Iterable[Operation] = ()) -> Flow:
    return Flow(id=f"flow-{generate_id()}", name=name, operations=tuple(operations))


def append_logs(operation: Operation, lines: Iterable[str], max_lines: int) -> Operation:
    """Return a copy of *operation* with *lines* appended, keeping the newest ``max_lines``."""
    logs = operation.logs + tuple(lines)
    if len(logs) > max_lines:
        logs = logs[-max_lines:]
    return replace(operation, logs=logs)


def reset_runtime(flow: Flow) -> Flow:
    """Drop run-time state: flow and operations back to idle, logs emptied."""
    return replace(
        flow,
        status=FlowStatus.IDLE,
        operations=tuple(
            replace(op, status=OperationStatus.IDLE, logs=()) for op in flow.operations
        ),
    )


# ── Persistence records ───────────────────────────────────────────────────
# Runtime fields (status, logs) are deliberately absent.


def _operation_to_record(operation: Operation) -> dict[str, Any]:
    return {
        "id": operation.id,
        "source_remote": operation.source_remote,
        "source_path": operation.source_path,
        "target_remote": operation.target_remote,
        "target_path": operation.target_path,
        "sync_config": operation.sync_config.to_dict(),
        "is_expanded": operation.is_expanded,
    }


def flow_to_record(flow: Flow) -> dict[str, Any]:
    return {
        "id": flow.id,
        "name": flow.name,
        "is_collapsed": flow.is_collapsed,
        "schedule_enabled": flow.schedule_enabled,
        "cron_expr": flow.cron_expr,
        "operations": [_operation_to_record(op) for op in flow.operations],
    }


def flow_from_record(record: Mapping[str, Any]) -> Flow:
    operations = tuple(
        Operation(
            id=op["id"],
            source_remote=op.get("source_remote") or "",
            source_path=op.get("source_path") or "/",
            target_remote=op.get("target_remote") or "",
            target_path=op.get("target_path") or "/",
            sync_config=SyncConfig.from_dict(op.get("sync_config")),
            is_expanded=bool(op.get("is_expanded", False)),
        )
        for op in record.get("operations", ())
    )
    return Flow(
        id=record["id"],
        name=record.get("name"),
        operations=operations,
        is_collapsed=bool(record.get("is_collapsed", False)),
        schedule_enabled=bool(record.get("schedule_enabled", False)),
        cron_expr=record.get("cron_expr"),
    )
