"""Flows and operations: data model, snapshot store, persistence.

Modules
-------
models      Flow, Operation, SyncConfig, statuses and transition tables
store       FlowStore (immutable snapshots, publish/subscribe, auto-save)
debounce    Debouncer used by the auto-save
repository  FlowRepository protocol, in-memory and SQLite implementations
"""

from flowsync.flows.models import (
    DragData,
    Flow,
    FlowsState,
    FlowStatus,
    Operation,
    OperationStatus,
    SyncAction,
    SyncConfig,
    new_flow,
    new_operation,
)

__all__ = [
    "DragData",
    "Flow",
    "FlowsState",
    "FlowStatus",
    "Operation",
    "OperationStatus",
    "SyncAction",
    "SyncConfig",
    "new_flow",
    "new_operation",
]
