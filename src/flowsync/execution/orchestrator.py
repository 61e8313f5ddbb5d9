"""Flow Orchestrator - sequential execution of a flow's operations.

WHY
───
A flow is only meaningful if its operations run strictly in order: the
second sync must see what the first one wrote. Many flows may run at
once, but inside one flow a single operation is ever in flight.

ARCHITECTURE
────────────
::

    execute_flow(flow_id)
      │ validate (empty flow, missing remotes)        ─► ValidationError
      │ flow=running, op[0]=running, rest=pending, logs cleared
      ▼
      for op in flow.operations:
          unit = build_unit(op)
          tracker.expect(unit.id)                      (before submit)
          engine.submit_unit(unit)                     ─► SubmissionError
          pipeline.open_stream / start_polling
          state = await tracker.await_terminal(unit.id)
          finally: stop_polling, drain, reset stream, delete unit (once)
          stopped?   → leave statuses to stop_flow
          failed     → op failed,    flow failed,    break
          cancelled  → op cancelled, flow cancelled, break
          completed  → op completed, next
      flow still running → completed

    stop_flow(flow_id)
      cancel active unit (best effort) ─► op cancelled, later ops idle,
      flow cancelled ─► delete unit

Every log line emitted during a run carries ``flow_id`` and ``run_id``.

Tags:
    flowsync, execution, orchestrator, state-machine, sequential

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field

from flowsync.core.errors import (
    CancellationError,
    EmptyFlowError,
    FlowAlreadyRunningError,
    IncompleteOperationError,
    SubmissionError,
)
from flowsync.core.events import EventBus
from flowsync.core.logging import LogContext, get_logger
from flowsync.core.settings import FlowSyncSettings, get_settings
from flowsync.execution.completion import CompletionTracker
from flowsync.execution.engine import LOG_ENTRY, SyncEngine, UnitState
from flowsync.execution.log_pipeline import LogDeliveryPipeline
from flowsync.execution.unit import ExecutionUnit, build_unit
from flowsync.flows.models import Flow, FlowStatus, OperationStatus
from flowsync.flows.store import FlowStore

logger = get_logger(__name__)

__all__ = ["FlowOrchestrator", "FlowRun"]

_OPERATION_OUTCOME = {
    UnitState.COMPLETED: OperationStatus.COMPLETED,
    UnitState.FAILED: OperationStatus.FAILED,
    UnitState.CANCELLED: OperationStatus.CANCELLED,
}


@dataclass
class FlowRun:
    """Bookkeeping for one in-progress ``execute_flow`` call."""

    flow_id: str
    run_id: str
    index: int = 0
    operation_id: str | None = None
    unit: ExecutionUnit | None = None
    stopped: bool = False
    units_created: list[str] = field(default_factory=list)
    units_released: set[str] = field(default_factory=set)


class FlowOrchestrator:
    """Runs flows against a :class:`~flowsync.execution.engine.SyncEngine`.

    Parameters
    ----------
    store : FlowStore
        Source of flows and target of every status/log update.
    engine : SyncEngine
        External sync engine.
    bus : EventBus
        Delivers ``unit.*`` and ``log.entry`` events from the engine.
    tracker, pipeline : optional
        Injected collaborators; built from settings when omitted.
    """

    def __init__(
        self,
        store: FlowStore,
        engine: SyncEngine,
        bus: EventBus,
        *,
        tracker: CompletionTracker | None = None,
        pipeline: LogDeliveryPipeline | None = None,
        settings: FlowSyncSettings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._engine = engine
        self._bus = bus
        self._tracker = tracker or CompletionTracker(
            engine,
            poll_interval=self._settings.completion_poll_interval,
            error_threshold=self._settings.completion_poll_error_threshold,
            timeout=self._settings.completion_timeout,
        )
        self._pipeline = pipeline or LogDeliveryPipeline(
            engine,
            max_lines=self._settings.stream_log_max_lines,
            backlog_tail_lines=self._settings.backlog_tail_lines,
            preview_lines=self._settings.preview_lines,
            recovery_interval=self._settings.log_recovery_interval,
            backlog_interval=self._settings.log_poll_interval,
        )
        self._pipeline.sink = self._on_line
        self._runs: dict[str, FlowRun] = {}
        self._stream_owners: dict[str, tuple[FlowRun, str]] = {}
        self._subscriptions: list[str] = []
        self._started = False

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Subscribe to engine events. Called lazily by :meth:`execute_flow`."""
        if self._started:
            return
        self._started = True
        self._subscriptions = [
            await self._bus.subscribe("unit.*", self._tracker.on_event),
            await self._bus.subscribe(LOG_ENTRY, self._pipeline.on_event),
        ]
        logger.debug("orchestrator.started")

    async def close(self) -> None:
        """Unsubscribe and stop every log stream and outstanding wait."""
        for sub_id in self._subscriptions:
            await self._bus.unsubscribe(sub_id)
        self._subscriptions = []
        self._started = False
        await self._pipeline.close()
        await self._tracker.close()

    # ── Queries ──────────────────────────────────────────────────────

    def is_running(self, flow_id: str) -> bool:
        return flow_id in self._runs

    def active_unit(self, flow_id: str) -> ExecutionUnit | None:
        run = self._runs.get(flow_id)
        return run.unit if run else None

    def current_run(self, flow_id: str) -> FlowRun | None:
        return self._runs.get(flow_id)

    @property
    def tracker(self) -> CompletionTracker:
        return self._tracker

    @property
    def pipeline(self) -> LogDeliveryPipeline:
        return self._pipeline

    # ── Execute ──────────────────────────────────────────────────────

    async def execute_flow(self, flow_id: str) -> FlowStatus:
        """Run every operation of a flow in order and return the final flow status.

        Raises:
            FlowNotFoundError: Unknown flow
            FlowAlreadyRunningError: The flow is already executing
            EmptyFlowError, IncompleteOperationError: Validation failed (nothing submitted)
            SubmissionError: The engine refused a unit (operation and flow marked failed)
        """
        await self.start()
        if flow_id in self._runs:
            raise FlowAlreadyRunningError(f"Flow '{flow_id}' is already running").with_context(
                flow_id=flow_id
            )
        flow = self._store.get_flow(flow_id)
        self._validate(flow)

        run = FlowRun(flow_id=flow_id, run_id=f"run-{uuid.uuid4().hex[:12]}")
        self._runs[flow_id] = run
        operation_ids = [op.id for op in flow.operations]

        async with LogContext(flow_id=flow_id, run_id=run.run_id):
            logger.info("orchestrator.flow_started", operations=len(operation_ids))
            try:
                self._store.apply_statuses(
                    flow_id,
                    flow_status=FlowStatus.RUNNING,
                    operations={
                        op_id: OperationStatus.RUNNING if i == 0 else OperationStatus.PENDING
                        for i, op_id in enumerate(operation_ids)
                    },
                    clear_logs=True,
                )

                for index, operation_id in enumerate(operation_ids):
                    if run.stopped:
                        break
                    run.index = index
                    run.operation_id = operation_id
                    state = await self._run_operation(run, operation_id, index)
                    if run.stopped or not self._flow_is_running(flow_id):
                        logger.info("orchestrator.run_interrupted", index=index)
                        break

                    outcome = _OPERATION_OUTCOME[state]
                    if outcome is OperationStatus.COMPLETED:
                        self._store.set_operation_status(flow_id, operation_id, outcome)
                        continue
                    self._store.apply_statuses(
                        flow_id,
                        flow_status=FlowStatus(outcome.value),
                        operations={operation_id: outcome},
                    )
                    logger.info(
                        "orchestrator.operation_ended_flow", index=index, status=outcome.value
                    )
                    break

                if not run.stopped and self._flow_is_running(flow_id):
                    self._store.set_flow_status(flow_id, FlowStatus.COMPLETED)
            except asyncio.CancelledError:
                logger.warning("orchestrator.run_cancelled", index=run.index)
                self._mark_cancelled(run)
                raise
            except Exception as e:
                logger.error("orchestrator.flow_error", error=str(e), error_type=type(e).__name__)
                self._mark_failed(run)
                raise
            finally:
                if self._runs.get(flow_id) is run:
                    del self._runs[flow_id]

            final = self._store.find_flow(flow_id)
            if run.stopped or final is None:
                status = FlowStatus.CANCELLED
            else:
                status = final.status
            logger.info(
                "orchestrator.flow_finished",
                status=status.value,
                units=len(run.units_created),
            )
            return status

    async def _run_operation(self, run: FlowRun, operation_id: str, index: int) -> UnitState:
        flow_id = run.flow_id
        if index > 0:
            self._store.set_operation_status(flow_id, operation_id, OperationStatus.RUNNING)
        operation = self._store.get_operation(flow_id, operation_id)

        unit = build_unit(operation, name_prefix=self._settings.temp_unit_prefix)
        run.unit = unit
        run.units_created.append(unit.id)
        key = unit.stream_key
        self._stream_owners[key] = (run, operation_id)
        self._tracker.expect(unit.id)
        logger.info(
            "orchestrator.operation_started", index=index, operation_id=operation_id, unit_id=unit.id
        )

        try:
            try:
                await self._engine.submit_unit(unit)
            except Exception as e:
                if not run.stopped:
                    self._store.apply_statuses(
                        flow_id,
                        flow_status=FlowStatus.FAILED,
                        operations={operation_id: OperationStatus.FAILED},
                    )
                raise SubmissionError(
                    f"Failed to submit unit for operation '{operation_id}': {e}", cause=e
                ).with_context(flow_id=flow_id, operation_id=operation_id, unit_id=unit.id) from e

            self._pipeline.open_stream(key)
            backlog = None
            if self._settings.backlog_channel:
                backlog = lambda: self._engine.drain_logs(key)  # noqa: E731
            self._pipeline.start_polling(key, backlog=backlog)
            state = await self._tracker.await_terminal(unit.id)
            logger.info(
                "orchestrator.operation_resolved", index=index, unit_id=unit.id, state=state.value
            )
            return state
        finally:
            self._tracker.discard(unit.id)
            self._pipeline.stop_polling(key)
            await self._pipeline.drain(key)
            self._pipeline.reset(key)
            self._stream_owners.pop(key, None)
            await self._release_unit(run, unit)

    # ── Stop ─────────────────────────────────────────────────────────

    async def stop_flow(self, flow_id: str) -> bool:
        """Cancel a running flow. Returns False when the flow is not running.

        The flow and its operations are marked cancelled and the run is
        detached before the engine is contacted, so the flow can be re-run
        at once. An engine-side cancellation failure is raised afterwards
        as :class:`CancellationError`.
        """
        run = self._runs.get(flow_id)
        if run is None:
            return False
        unit = run.unit

        async with LogContext(flow_id=flow_id, run_id=run.run_id):
            self._mark_cancelled(run)
            run.stopped = True
            del self._runs[flow_id]
            logger.info("orchestrator.flow_stopped", index=run.index)

            cancel_error: CancellationError | None = None
            if unit is not None and unit.id not in run.units_released:
                try:
                    await self._engine.cancel_unit(unit.id)
                except Exception as e:
                    logger.warning("orchestrator.cancel_failed", unit_id=unit.id, error=str(e))
                    cancel_error = CancellationError(
                        f"Engine did not cancel unit '{unit.id}': {e}", cause=e
                    ).with_context(flow_id=flow_id, unit_id=unit.id)

            if unit is not None:
                await self._release_unit(run, unit)
                # The detached run must not wait for the engine to notice.
                self._tracker.resolve(unit.id, UnitState.CANCELLED, source="stop")
            if cancel_error is not None:
                raise cancel_error
        return True

    # ── Internals ────────────────────────────────────────────────────

    def _validate(self, flow: Flow) -> None:
        if not flow.operations:
            logger.warning("orchestrator.validation_failed", flow_id=flow.id, reason="empty")
            raise EmptyFlowError(f"Flow '{flow.id}' has no operations").with_context(
                flow_id=flow.id
            )
        for op in flow.operations:
            if not op.is_complete:
                logger.warning(
                    "orchestrator.validation_failed",
                    flow_id=flow.id,
                    operation_id=op.id,
                    reason="incomplete",
                )
                raise IncompleteOperationError(
                    f"Operation '{op.id}' needs both a source and a target remote"
                ).with_context(flow_id=flow.id, operation_id=op.id)

    def _flow_is_running(self, flow_id: str) -> bool:
        flow = self._store.find_flow(flow_id)
        return flow is not None and flow.status is FlowStatus.RUNNING

    def _owns_flow(self, run: FlowRun) -> bool:
        return self._runs.get(run.flow_id) is run

    def _mark_failed(self, run: FlowRun) -> None:
        flow = self._store.find_flow(run.flow_id)
        if not self._owns_flow(run) or flow is None or flow.status is not FlowStatus.RUNNING:
            return
        self._store.apply_statuses(
            run.flow_id,
            flow_status=FlowStatus.FAILED,
            operations={
                op.id: OperationStatus.FAILED
                for op in flow.operations
                if op.status is OperationStatus.RUNNING
            },
        )

    def _mark_cancelled(self, run: FlowRun) -> None:
        flow = self._store.find_flow(run.flow_id)
        if not self._owns_flow(run) or flow is None or flow.status is not FlowStatus.RUNNING:
            return
        changes: dict[str, OperationStatus] = {}
        for index, op in enumerate(flow.operations):
            if op.status.is_terminal or index < run.index:
                continue
            changes[op.id] = OperationStatus.CANCELLED if index == run.index else OperationStatus.IDLE
        self._store.apply_statuses(
            run.flow_id, flow_status=FlowStatus.CANCELLED, operations=changes
        )

    async def _release_unit(self, run: FlowRun, unit: ExecutionUnit) -> None:
        if unit.id in run.units_released:
            return
        run.units_released.add(unit.id)
        if run.unit is unit:
            run.unit = None
        try:
            await self._engine.delete_unit(unit.id)
            logger.debug("orchestrator.unit_deleted", unit_id=unit.id)
        except Exception as e:
            logger.warning("orchestrator.cleanup_failed", unit_id=unit.id, error=str(e))

    def _on_line(self, stream_key: str, line: str) -> None:
        owner = self._stream_owners.get(stream_key)
        if owner is None:
            return
        run, operation_id = owner
        if run.stopped and self._runs.get(run.flow_id) is not None:
            # A newer run owns the flow's logs now.
            return
        self._store.append_operation_log(run.flow_id, operation_id, [line])
