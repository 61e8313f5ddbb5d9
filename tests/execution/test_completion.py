"""Tests for flowsync.execution.completion.CompletionTracker."""

import asyncio

import pytest

from flowsync.core.events import Event
from flowsync.core.settings import reset_settings
from flowsync.execution.completion import CompletionTracker
from flowsync.execution.engine import UnitState, UnitStatus
from flowsync.execution.memory_engine import InMemorySyncEngine
from flowsync.execution.unit import build_unit
from flowsync.flows.models import new_operation


class ScriptedStatusEngine:
    """Answers status queries from a list; the last answer repeats."""

    def __init__(self, *answers: UnitState) -> None:
        self.answers = list(answers)
        self.queries = 0

    async def query_unit_status(self, unit_id: str) -> UnitStatus:
        self.queries += 1
        state = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        return UnitStatus(unit_id=unit_id, status=state)


def _terminal(unit_id: str, event_type: str = "unit.completed") -> Event:
    return Event(event_type=event_type, source="test", payload={"unit_id": unit_id})


# ------------------------------------------------------------------ #
# Exactly-once resolution
# ------------------------------------------------------------------ #


class TestExactlyOnce:
    @pytest.mark.asyncio
    async def test_event_then_stale_polls_resolve_once(self):
        engine = ScriptedStatusEngine(UnitState.FAILED)
        tracker = CompletionTracker(engine, poll_interval=10, error_threshold=3)
        tracker.expect("board-1")
        await tracker.on_event(_terminal("board-1"))
        stale = [tracker.resolve("board-1", UnitState.FAILED, source="poll") for _ in range(3)]
        assert stale == [False, False, False]
        assert await tracker.await_terminal("board-1") is UnitState.COMPLETED
        assert engine.queries == 0

    @pytest.mark.asyncio
    async def test_event_before_await_is_kept(self):
        tracker = CompletionTracker(ScriptedStatusEngine(UnitState.RUNNING), poll_interval=10)
        tracker.expect("board-1")
        await tracker.on_event(_terminal("board-1", "unit.cancelled"))
        assert await tracker.await_terminal("board-1") is UnitState.CANCELLED

    @pytest.mark.asyncio
    async def test_signals_for_unknown_unit_ignored(self):
        tracker = CompletionTracker(ScriptedStatusEngine(UnitState.RUNNING), poll_interval=10)
        await tracker.on_event(_terminal("board-unknown"))
        assert tracker.resolve("board-unknown", UnitState.COMPLETED) is False
        assert tracker.pending_count == 0

    @pytest.mark.asyncio
    async def test_non_terminal_events_ignored(self):
        tracker = CompletionTracker(ScriptedStatusEngine(UnitState.RUNNING), poll_interval=10)
        tracker.expect("board-1")
        await tracker.on_event(_terminal("board-1", "unit.progress"))
        assert tracker.pending_count == 1
        await tracker.close()


# ------------------------------------------------------------------ #
# Fallback poll
# ------------------------------------------------------------------ #


class TestPolling:
    @pytest.mark.asyncio
    async def test_poll_resolves_terminal_status(self):
        engine = ScriptedStatusEngine(UnitState.RUNNING, UnitState.RUNNING, UnitState.FAILED)
        tracker = CompletionTracker(engine, poll_interval=0.01)
        tracker.expect("board-1")
        state = await asyncio.wait_for(tracker.await_terminal("board-1"), timeout=1)
        assert state is UnitState.FAILED
        assert engine.queries == 3

    @pytest.mark.asyncio
    async def test_repeated_query_errors_mean_completed(self):
        engine = InMemorySyncEngine()
        engine.query_error = RuntimeError("unit not found")
        tracker = CompletionTracker(engine, poll_interval=0.01, error_threshold=3)
        tracker.expect("board-1")
        state = await asyncio.wait_for(tracker.await_terminal("board-1"), timeout=1)
        assert state is UnitState.COMPLETED
        assert len(engine.calls_for("query")) == 3

    @pytest.mark.asyncio
    async def test_discarded_unit_resolves_completed(self):
        engine = InMemorySyncEngine()
        unit = build_unit(new_operation("a", "b"))
        await engine.submit_unit(unit)
        tracker = CompletionTracker(engine, poll_interval=0.01, error_threshold=2)
        tracker.expect(unit.id)
        waiter = asyncio.create_task(tracker.await_terminal(unit.id))
        await asyncio.sleep(0.03)
        assert not waiter.done()
        # No bus: the terminal event is never delivered.
        await engine.finish(unit.id, UnitState.FAILED)
        assert await asyncio.wait_for(waiter, timeout=1) is UnitState.COMPLETED

    @pytest.mark.asyncio
    async def test_error_count_resets_after_successful_query(self):
        class Flaky(ScriptedStatusEngine):
            async def query_unit_status(self, unit_id):
                self.queries += 1
                if self.queries in (1, 2, 4, 5):
                    raise RuntimeError("timeout")
                if self.queries == 3:
                    return UnitStatus(unit_id=unit_id, status=UnitState.RUNNING)
                return UnitStatus(unit_id=unit_id, status=UnitState.CANCELLED)

        engine = Flaky(UnitState.RUNNING)
        tracker = CompletionTracker(engine, poll_interval=0.01, error_threshold=3)
        state = await asyncio.wait_for(tracker.await_terminal("board-1"), timeout=1)
        assert state is UnitState.CANCELLED
        assert engine.queries == 6

    @pytest.mark.asyncio
    async def test_polling_stops_after_resolution(self):
        engine = ScriptedStatusEngine(UnitState.RUNNING)
        tracker = CompletionTracker(engine, poll_interval=0.01)
        tracker.expect("board-1")
        waiter = asyncio.create_task(tracker.await_terminal("board-1"))
        await asyncio.sleep(0.03)
        await tracker.on_event(_terminal("board-1"))
        assert await waiter is UnitState.COMPLETED
        queries = engine.queries
        await asyncio.sleep(0.05)
        assert engine.queries == queries
        assert not tracker.is_expected("board-1")


# ------------------------------------------------------------------ #
# Timeout & cleanup
# ------------------------------------------------------------------ #


class TestTimeoutAndCleanup:
    @pytest.mark.asyncio
    async def test_timeout_resolves_failed(self):
        tracker = CompletionTracker(
            ScriptedStatusEngine(UnitState.RUNNING), poll_interval=10, timeout=0.02
        )
        state = await asyncio.wait_for(tracker.await_terminal("board-1"), timeout=1)
        assert state is UnitState.FAILED

    @pytest.mark.asyncio
    async def test_no_timeout_by_default(self):
        tracker = CompletionTracker(ScriptedStatusEngine(UnitState.RUNNING), poll_interval=10)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(tracker.await_terminal("board-1"), timeout=0.05)
        assert not tracker.is_expected("board-1")

    @pytest.mark.asyncio
    async def test_settings_timeout_applies_when_omitted(self, monkeypatch):
        monkeypatch.setenv("FLOWSYNC_COMPLETION_TIMEOUT", "0.02")
        reset_settings()
        tracker = CompletionTracker(ScriptedStatusEngine(UnitState.RUNNING), poll_interval=10)
        state = await asyncio.wait_for(tracker.await_terminal("board-1"), timeout=1)
        assert state is UnitState.FAILED

    @pytest.mark.asyncio
    async def test_explicit_none_disables_settings_timeout(self, monkeypatch):
        monkeypatch.setenv("FLOWSYNC_COMPLETION_TIMEOUT", "0.02")
        reset_settings()
        tracker = CompletionTracker(
            ScriptedStatusEngine(UnitState.RUNNING), poll_interval=10, timeout=None
        )
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(tracker.await_terminal("board-1"), timeout=0.1)

    @pytest.mark.asyncio
    async def test_discard_cancels_pending_wait(self):
        tracker = CompletionTracker(ScriptedStatusEngine(UnitState.RUNNING), poll_interval=10)
        tracker.expect("board-1")
        assert tracker.pending_count == 1
        tracker.discard("board-1")
        assert tracker.pending_count == 0
        assert tracker.resolve("board-1", UnitState.COMPLETED) is False

    @pytest.mark.asyncio
    async def test_close_cancels_waiters(self):
        tracker = CompletionTracker(ScriptedStatusEngine(UnitState.RUNNING), poll_interval=10)
        waiter = asyncio.create_task(tracker.await_terminal("board-1"))
        await asyncio.sleep(0)
        await tracker.close()
        with pytest.raises(asyncio.CancelledError):
            await waiter
