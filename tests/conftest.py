"""
Shared pytest fixtures for flowsync tests.

Every fixture works with tiny poll intervals so fallback paths (status
polling, log catch-up, auto-save) run in milliseconds.

Usage:
    Fixtures are auto-discovered by pytest; request them by name.

    @pytest.mark.asyncio
    async def test_something(store, engine, orchestrator):
        ...
"""

from __future__ import annotations

import pytest

from flowsync.core.events.memory import InMemoryEventBus
from flowsync.core.settings import FlowSyncSettings, reset_settings
from flowsync.execution.memory_engine import InMemorySyncEngine
from flowsync.execution.orchestrator import FlowOrchestrator
from flowsync.flows.models import new_operation
from flowsync.flows.repository import InMemoryFlowRepository
from flowsync.flows.store import FlowStore


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    """No FLOWSYNC_* variable from the developer's shell leaks into tests."""
    import os

    for key in list(os.environ):
        if key.startswith("FLOWSYNC_"):
            monkeypatch.delenv(key)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings() -> FlowSyncSettings:
    return FlowSyncSettings(
        completion_poll_interval=0.01,
        completion_poll_error_threshold=3,
        log_poll_interval=0.01,
        log_recovery_interval=0.01,
        autosave_delay=0.01,
    )


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def engine(bus) -> InMemorySyncEngine:
    return InMemorySyncEngine(bus)


@pytest.fixture
def repository() -> InMemoryFlowRepository:
    return InMemoryFlowRepository()


@pytest.fixture
def store(engine, settings) -> FlowStore:
    return FlowStore(
        engine=engine,
        autosave_delay=settings.autosave_delay,
        operation_log_max_lines=settings.operation_log_max_lines,
    )


@pytest.fixture
def orchestrator(store, engine, bus, settings) -> FlowOrchestrator:
    return FlowOrchestrator(store, engine, bus, settings=settings)


@pytest.fixture
def make_flow(store):
    """Factory: ``make_flow(("remoteX", "local"), ("local", "remoteY"))`` -> Flow."""

    def _make(*pairs: tuple[str, str], name: str | None = "test-flow"):
        flow = store.add_flow(name)
        for source, target in pairs:
            store.add_operation(flow.id, new_operation(source, target))
        return store.get_flow(flow.id)

    return _make
