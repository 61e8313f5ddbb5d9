"""flowsync - orchestration core for multi-step remote-to-remote sync flows.

Quick start::

    from flowsync import (
        FlowOrchestrator, FlowStore, InMemoryEventBus, InMemorySyncEngine,
        configure_logging, new_operation,
    )

    configure_logging(level="INFO")
    bus = InMemoryEventBus()
    engine = InMemorySyncEngine(bus)
    store = FlowStore(engine=engine)
    flow = store.add_flow("nightly")
    store.add_operation(flow.id, new_operation("gdrive", "local"))

    orchestrator = FlowOrchestrator(store, engine, bus)
    status = await orchestrator.execute_flow(flow.id)
"""

from flowsync.core.errors import FlowSyncError
from flowsync.core.events import Event, EventBus
from flowsync.core.events.memory import InMemoryEventBus
from flowsync.core.logging import configure_logging, get_logger
from flowsync.core.settings import FlowSyncSettings, get_settings
from flowsync.execution.completion import CompletionTracker
from flowsync.execution.engine import SyncEngine, UnitState
from flowsync.execution.log_pipeline import LogDeliveryPipeline
from flowsync.execution.memory_engine import InMemorySyncEngine
from flowsync.execution.orchestrator import FlowOrchestrator
from flowsync.execution.unit import ExecutionUnit, build_unit
from flowsync.flows.models import (
    Flow,
    FlowStatus,
    Operation,
    OperationStatus,
    SyncAction,
    SyncConfig,
    new_flow,
    new_operation,
)
from flowsync.flows.repository import InMemoryFlowRepository, SqliteFlowRepository
from flowsync.flows.store import FlowStore

__version__ = "0.1.0"

__all__ = [
    "CompletionTracker",
    "Event",
    "EventBus",
    "ExecutionUnit",
    "Flow",
    "FlowOrchestrator",
    "FlowStatus",
    "FlowStore",
    "FlowSyncError",
    "FlowSyncSettings",
    "InMemoryEventBus",
    "InMemoryFlowRepository",
    "InMemorySyncEngine",
    "LogDeliveryPipeline",
    "Operation",
    "OperationStatus",
    "SqliteFlowRepository",
    "SyncAction",
    "SyncConfig",
    "SyncEngine",
    "UnitState",
    "build_unit",
    "configure_logging",
    "get_logger",
    "get_settings",
    "new_flow",
    "new_operation",
]
