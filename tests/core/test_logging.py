"""Tests for flowsync.core.logging: configuration and context binding."""

import asyncio
import json

import pytest
import structlog

from flowsync.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)


@pytest.fixture(autouse=True)
def _clean_context():
    clear_context()
    yield
    clear_context()
    structlog.reset_defaults()


class TestConfigureLogging:
    def test_json_output_carries_service_and_context(self, capsys):
        configure_logging(level="INFO", json_format=True, service="flowsync-test")
        bind_context(flow_id="flow-1")
        get_logger("tests").info("orchestrator.flow_started", operations=2)

        line = capsys.readouterr().out.strip().splitlines()[-1]
        data = json.loads(line)
        assert data["event"] == "orchestrator.flow_started"
        assert data["flow_id"] == "flow-1"
        assert data["operations"] == 2
        assert data["service.name"] == "flowsync-test"
        assert data["log.level"] == "info"
        assert data["log.logger"] == "tests"
        assert "@timestamp" in data

    def test_level_filtering(self, capsys):
        configure_logging(level="WARNING", json_format=True)
        log = get_logger("tests")
        log.info("store.saved")
        log.warning("store.autosave_failed")
        out = capsys.readouterr().out
        assert "store.saved" not in out
        assert "store.autosave_failed" in out


class TestContext:
    def test_bind_and_unbind(self):
        bind_context(flow_id="flow-1", run_id="run-1")
        unbind_context("run_id")
        assert structlog.contextvars.get_contextvars() == {"flow_id": "flow-1"}

    def test_log_context_sync(self):
        with LogContext(flow_id="flow-2"):
            assert structlog.contextvars.get_contextvars()["flow_id"] == "flow-2"
        assert "flow_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_log_context_isolated_per_task(self):
        seen: dict[str, str] = {}

        async def run(flow_id: str):
            async with LogContext(flow_id=flow_id):
                await asyncio.sleep(0.01)
                seen[flow_id] = structlog.contextvars.get_contextvars()["flow_id"]

        await asyncio.gather(run("flow-a"), run("flow-b"))
        assert seen == {"flow-a": "flow-a", "flow-b": "flow-b"}


class TestGetLogger:
    def test_named_logger_binds_name(self, capsys):
        configure_logging(level="INFO", json_format=True)
        get_logger("flowsync.flows.store").info("store.loaded", flows=0)
        data = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert data["log.logger"] == "flowsync.flows.store"

    def test_unnamed_logger(self, capsys):
        configure_logging(level="INFO", json_format=True)
        get_logger().info("events.closed")
        data = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert data["event"] == "events.closed"
        assert "log.logger" not in data
