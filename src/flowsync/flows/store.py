"""
Flow Store - the single mutable container for flows and operations.

Manifesto:
    Every component reads the current snapshot synchronously and reacts to
    every change, but nobody mutates a published snapshot. Each edit
    builds a new :class:`~flowsync.flows.models.FlowsState` and publishes
    it as a whole, so observers never see a half-applied change.

Architecture:
    ::

        edit (add/remove/update/move/...)      status + log updates
                  │                                    │
                  ▼                                    ▼
            _publish(state, persist=True)     _publish(state, persist=False)
                  │
                  ├─► listeners(state)        (subscribe / unsubscribe)
                  └─► Debouncer(autosave_delay) ─► save() ─► FlowRepository

        load():  engine.list_units() ─► delete stale "__temp_" units
                 repository.load_flows() ─► reset runtime ─► publish

    Only structural edits schedule an auto-save; run-time status and logs
    are never persisted.

Tags:
    flowsync, flows, store, snapshot, observer, debounce
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from typing import Any

from flowsync.core.errors import (
    FlowNotFoundError,
    OperationNotFoundError,
    PersistenceError,
)
from flowsync.core.logging import get_logger
from flowsync.core.settings import get_settings
from flowsync.execution.engine import SyncEngine
from flowsync.flows.debounce import Debouncer
from flowsync.flows.models import (
    DragData,
    Flow,
    FlowsState,
    FlowStatus,
    Operation,
    OperationStatus,
    append_logs,
    new_flow,
    new_operation,
    reset_runtime,
    validate_flow_transition,
    validate_operation_transition,
)
from flowsync.flows.repository import FlowRepository

logger = get_logger(__name__)

__all__ = ["FlowStore", "StateListener"]

StateListener = Callable[[FlowsState], None]

_FLOW_FIELDS = frozenset({"name", "is_collapsed", "schedule_enabled", "cron_expr"})
_OPERATION_FIELDS = frozenset({
    "source_remote",
    "source_path",
    "target_remote",
    "target_path",
    "sync_config",
    "is_expanded",
})


class FlowStore:
    """Snapshot store with publish/subscribe and debounced persistence."""

    def __init__(
        self,
        repository: FlowRepository | None = None,
        engine: SyncEngine | None = None,
        *,
        autosave_delay: float | None = None,
        operation_log_max_lines: int | None = None,
        temp_unit_prefix: str | None = None,
    ) -> None:
        settings = get_settings()
        self._repository = repository
        self._engine = engine
        self._log_max_lines = (
            operation_log_max_lines
            if operation_log_max_lines is not None
            else settings.operation_log_max_lines
        )
        self._temp_prefix = (
            temp_unit_prefix if temp_unit_prefix is not None else settings.temp_unit_prefix
        )
        delay = autosave_delay if autosave_delay is not None else settings.autosave_delay
        self._autosave = Debouncer(self._autosave_now, delay)
        self._state = FlowsState()
        self._listeners: list[StateListener] = []
        self.last_persist_error: PersistenceError | None = None

    # ── Snapshot access ──────────────────────────────────────────────

    @property
    def state(self) -> FlowsState:
        return self._state

    @property
    def flows(self) -> tuple[Flow, ...]:
        return self._state.flows

    @property
    def is_dragging(self) -> bool:
        return self._state.is_dragging

    def find_flow(self, flow_id: str) -> Flow | None:
        return self._state.find(flow_id)

    def get_flow(self, flow_id: str) -> Flow:
        flow = self._state.find(flow_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        return flow

    def get_operation(self, flow_id: str, operation_id: str) -> Operation:
        flow = self.get_flow(flow_id)
        index = flow.index_of(operation_id)
        if index < 0:
            raise OperationNotFoundError(flow_id, operation_id)
        return flow.operations[index]

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register *listener* for every published snapshot. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── Flow CRUD ────────────────────────────────────────────────────

    def add_flow(self, name: str | None = None, operations: Iterable[Operation] = ()) -> Flow:
        flow = new_flow(name, operations)
        self._publish(replace(self._state, flows=self._state.flows + (flow,)))
        logger.info("store.flow_added", flow_id=flow.id)
        return flow

    def remove_flow(self, flow_id: str) -> None:
        self.get_flow(flow_id)
        flows = tuple(flow for flow in self._state.flows if flow.id != flow_id)
        self._publish(replace(self._state, flows=flows))
        logger.info("store.flow_removed", flow_id=flow_id)

    def update_flow(self, flow_id: str, **changes: Any) -> Flow:
        """Change editable flow fields (name, is_collapsed, schedule_enabled, cron_expr)."""
        unknown = set(changes) - _FLOW_FIELDS
        if unknown:
            raise ValueError(f"Not editable on a flow: {sorted(unknown)}")
        flow = replace(self.get_flow(flow_id), **changes)
        self._replace_flow(flow)
        return flow

    def toggle_flow_collapsed(self, flow_id: str) -> None:
        flow = self.get_flow(flow_id)
        self._replace_flow(replace(flow, is_collapsed=not flow.is_collapsed))

    # ── Operation CRUD ───────────────────────────────────────────────

    def add_operation(self, flow_id: str, operation: Operation | None = None) -> Operation:
        flow = self.get_flow(flow_id)
        operation = operation or new_operation()
        self._replace_flow(replace(flow, operations=flow.operations + (operation,)))
        logger.info("store.operation_added", flow_id=flow_id, operation_id=operation.id)
        return operation

    def remove_operation(self, flow_id: str, operation_id: str) -> None:
        self.get_operation(flow_id, operation_id)
        flow = self.get_flow(flow_id)
        operations = tuple(op for op in flow.operations if op.id != operation_id)
        self._replace_flow(replace(flow, operations=operations))

    def update_operation(self, flow_id: str, operation_id: str, **changes: Any) -> Operation:
        """Change editable operation fields (remotes, paths, sync_config, is_expanded)."""
        unknown = set(changes) - _OPERATION_FIELDS
        if unknown:
            raise ValueError(f"Not editable on an operation: {sorted(unknown)}")
        operation = replace(self.get_operation(flow_id, operation_id), **changes)
        self._replace_operation(flow_id, operation)
        return operation

    def toggle_operation_expanded(self, flow_id: str, operation_id: str) -> None:
        operation = self.get_operation(flow_id, operation_id)
        self._replace_operation(flow_id, replace(operation, is_expanded=not operation.is_expanded))

    def clear_remote_references(self, remote_name: str) -> int:
        """Blank out *remote_name* wherever an operation uses it. Returns operations touched."""
        touched = 0
        flows: list[Flow] = []
        for flow in self._state.flows:
            operations: list[Operation] = []
            for op in flow.operations:
                updated = op
                if op.source_remote == remote_name:
                    updated = replace(updated, source_remote="")
                if op.target_remote == remote_name:
                    updated = replace(updated, target_remote="")
                if updated is not op:
                    touched += 1
                operations.append(updated)
            flows.append(replace(flow, operations=tuple(operations)))
        if touched:
            self._publish(replace(self._state, flows=tuple(flows)))
            logger.info("store.remote_references_cleared", remote=remote_name, operations=touched)
        return touched

    # ── Drag / move ──────────────────────────────────────────────────

    def start_drag(self, flow_id: str, operation_index: int, count: int = 1) -> None:
        flow = self.get_flow(flow_id)
        if not 0 <= operation_index < len(flow.operations):
            raise IndexError(f"Operation index {operation_index} out of range for {flow_id}")
        drag = DragData(source_flow_id=flow_id, operation_index=operation_index, count=count)
        self._publish(replace(self._state, drag=drag), persist=False)

    def end_drag(self) -> None:
        if self._state.drag is not None:
            self._publish(replace(self._state, drag=None), persist=False)

    def move_operations(self, target_flow_id: str, target_index: int) -> None:
        """Drop the dragged operation(s) into *target_flow_id* at *target_index*."""
        drag = self._state.drag
        if drag is None:
            return
        if drag.source_flow_id == target_flow_id and drag.operation_index == target_index:
            self.end_drag()
            return

        source = self._drop_flow(drag.source_flow_id)
        target = self._drop_flow(target_flow_id)
        start = drag.operation_index
        moved = source.operations[start:start + drag.count]
        remaining = source.operations[:start] + source.operations[start + drag.count:]

        if source.id == target.id:
            index = target_index - len(moved) if target_index > start else target_index
            index = max(0, min(index, len(remaining)))
            operations = remaining[:index] + moved + remaining[index:]
            flows = self._swap(source.id, replace(source, operations=operations))
        else:
            index = max(0, min(target_index, len(target.operations)))
            operations = target.operations[:index] + moved + target.operations[index:]
            flows = self._swap(source.id, replace(source, operations=remaining))
            flows = tuple(
                replace(flow, operations=operations) if flow.id == target.id else flow
                for flow in flows
            )

        self._publish(FlowsState(flows=flows, drag=None))
        logger.info(
            "store.operations_moved",
            source_flow_id=source.id,
            target_flow_id=target.id,
            target_index=target_index,
            count=len(moved),
        )

    def move_operations_to_new_flow(self) -> Flow | None:
        """Move the dragged operation(s) into a brand-new flow appended at the end."""
        drag = self._state.drag
        if drag is None:
            return None
        source = self._drop_flow(drag.source_flow_id)
        start = drag.operation_index
        moved = source.operations[start:start + drag.count]
        remaining = source.operations[:start] + source.operations[start + drag.count:]
        created = new_flow(operations=moved)
        flows = self._swap(source.id, replace(source, operations=remaining)) + (created,)
        self._publish(FlowsState(flows=flows, drag=None))
        logger.info("store.operations_moved_to_new_flow", source_flow_id=source.id, flow_id=created.id)
        return created

    def _drop_flow(self, flow_id: str) -> Flow:
        """Flow involved in a drop; a missing one cancels the drag before raising."""
        flow = self._state.find(flow_id)
        if flow is None:
            self.end_drag()
            raise FlowNotFoundError(flow_id)
        return flow

    # ── Run-time state (never persisted) ─────────────────────────────

    def apply_statuses(
        self,
        flow_id: str,
        *,
        flow_status: FlowStatus | None = None,
        operations: Mapping[str, OperationStatus] | None = None,
        clear_logs: bool = False,
    ) -> Flow:
        """Apply a set of status changes to one flow as a single snapshot.

        Every transition is validated before anything is published.

        Raises:
            InvalidTransitionError: If any requested transition is illegal
        """
        flow = self.get_flow(flow_id)
        operations = operations or {}
        for operation_id in operations:
            if flow.index_of(operation_id) < 0:
                raise OperationNotFoundError(flow_id, operation_id)
        if flow_status is not None:
            validate_flow_transition(flow.status, flow_status)

        updated_ops: list[Operation] = []
        for op in flow.operations:
            target = operations.get(op.id)
            if target is not None:
                validate_operation_transition(op.status, target)
                op = replace(op, status=target)
            if clear_logs and op.logs:
                op = replace(op, logs=())
            updated_ops.append(op)

        updated = replace(
            flow,
            status=flow_status if flow_status is not None else flow.status,
            operations=tuple(updated_ops),
        )
        self._publish(replace(self._state, flows=self._swap(flow_id, updated)), persist=False)
        return updated

    def set_flow_status(self, flow_id: str, status: FlowStatus) -> None:
        self.apply_statuses(flow_id, flow_status=status)

    def set_operation_status(self, flow_id: str, operation_id: str, status: OperationStatus) -> None:
        self.apply_statuses(flow_id, operations={operation_id: status})

    def append_operation_log(self, flow_id: str, operation_id: str, lines: Iterable[str]) -> None:
        operation = self.get_operation(flow_id, operation_id)
        updated = append_logs(operation, lines, self._log_max_lines)
        self._replace_operation(flow_id, updated, persist=False)

    def clear_operation_logs(self, flow_id: str, operation_id: str) -> None:
        operation = self.get_operation(flow_id, operation_id)
        if operation.logs:
            self._replace_operation(flow_id, replace(operation, logs=()), persist=False)

    # ── Persistence ──────────────────────────────────────────────────

    async def load(self) -> tuple[Flow, ...]:
        """Remove stale temp units, then load flows with run-time state reset."""
        await self.cleanup_stale_units()
        if self._repository is None:
            return self._state.flows
        try:
            loaded = await self._repository.load_flows()
        except Exception as e:
            raise PersistenceError(f"Failed to load flows: {e}", cause=e) from e
        flows = tuple(reset_runtime(flow) for flow in loaded)
        self._publish(FlowsState(flows=flows), persist=False)
        logger.info("store.loaded", flows=len(flows))
        return flows

    async def cleanup_stale_units(self) -> int:
        """Delete engine units left behind by a previous run. Errors are logged, not raised."""
        if self._engine is None:
            return 0
        try:
            units = await self._engine.list_units()
        except Exception as e:
            logger.warning("store.stale_unit_listing_failed", error=str(e))
            return 0
        deleted = 0
        for unit in units:
            if not unit.name.startswith(self._temp_prefix):
                continue
            try:
                await self._engine.delete_unit(unit.id)
                deleted += 1
            except Exception as e:
                logger.warning("store.stale_unit_delete_failed", unit_id=unit.id, error=str(e))
        if deleted:
            logger.info("store.stale_units_deleted", count=deleted)
        return deleted

    async def save(self) -> None:
        """Persist the current flows now.

        Raises:
            PersistenceError: The in-memory state is kept as is.
        """
        if self._repository is None:
            return
        try:
            await self._repository.save_flows(list(self._state.flows))
        except Exception as e:
            error = PersistenceError(f"Failed to save flows: {e}", cause=e)
            self.last_persist_error = error
            raise error from e
        self.last_persist_error = None
        logger.debug("store.saved", flows=len(self._state.flows))

    async def flush(self) -> None:
        """Run a pending debounced save immediately."""
        await self._autosave.flush()

    async def close(self) -> None:
        """Drop any pending save and all listeners."""
        self._autosave.cancel()
        self._listeners.clear()

    @property
    def save_pending(self) -> bool:
        return self._autosave.pending

    async def _autosave_now(self) -> None:
        try:
            await self.save()
        except PersistenceError as e:
            logger.error("store.autosave_failed", **e.to_dict())

    # ── Internals ────────────────────────────────────────────────────

    def _swap(self, flow_id: str, updated: Flow) -> tuple[Flow, ...]:
        return tuple(updated if flow.id == flow_id else flow for flow in self._state.flows)

    def _replace_flow(self, flow: Flow, *, persist: bool = True) -> None:
        self._publish(replace(self._state, flows=self._swap(flow.id, flow)), persist=persist)

    def _replace_operation(self, flow_id: str, operation: Operation, *, persist: bool = True) -> None:
        flow = self.get_flow(flow_id)
        operations = tuple(operation if op.id == operation.id else op for op in flow.operations)
        self._replace_flow(replace(flow, operations=operations), persist=persist)

    def _publish(self, state: FlowsState, *, persist: bool = True) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.warning("store.listener_error", error=str(e))
        if persist and self._repository is not None:
            self._autosave.trigger()
