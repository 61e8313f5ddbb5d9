"""Tests for flowsync.execution.log_pipeline.LogDeliveryPipeline."""

import asyncio

import pytest

from flowsync.core.events import Event
from flowsync.core.settings import reset_settings
from flowsync.execution.log_pipeline import LogDeliveryPipeline
from flowsync.execution.memory_engine import InMemorySyncEngine


class BrokenFetchEngine(InMemorySyncEngine):
    async def fetch_logs_since(self, stream_key, after_seq):
        raise ConnectionError("engine unreachable")


class SlowFetchEngine(InMemorySyncEngine):
    """The first fetch answers from a snapshot taken before it yields."""

    def __init__(self):
        super().__init__()
        self.fetches = []

    async def fetch_logs_since(self, stream_key, after_seq):
        self.fetches.append(after_seq)
        entries = self.logs.since(stream_key, after_seq)
        if len(self.fetches) == 1:
            await asyncio.sleep(0.02)
        return entries


@pytest.fixture
def log_engine():
    return InMemorySyncEngine()


@pytest.fixture
def pipeline(log_engine):
    return LogDeliveryPipeline(
        log_engine,
        max_lines=1000,
        backlog_tail_lines=5,
        preview_lines=3,
        recovery_interval=0.01,
        backlog_interval=0.01,
    )


def _log_event(key, seq, message):
    return Event(
        event_type="log.entry",
        source="test",
        payload={"stream_key": key, "seq": seq, "message": message},
    )


# ------------------------------------------------------------------ #
# Dedup & ordering
# ------------------------------------------------------------------ #


class TestDedup:
    def test_fragment_sent_twice_appears_once(self, pipeline):
        assert pipeline.ingest("s", 1, "a") is True
        assert pipeline.ingest("s", 1, "a") is False
        assert pipeline.lines("s") == ["a"]

    def test_lower_sequence_after_higher_is_dropped(self, pipeline):
        pipeline.ingest("s", 5, "five")
        assert pipeline.ingest("s", 3, "three") is False
        assert pipeline.lines("s") == ["five"]
        assert pipeline.last_seq("s") == 5

    def test_unsequenced_fragments_always_appended(self, pipeline):
        pipeline.ingest("s", 4, "four")
        pipeline.ingest("s", 0, "note")
        pipeline.ingest("s", None, "note")
        assert pipeline.lines("s") == ["four", "note", "note"]
        assert pipeline.last_seq("s") == 4

    def test_streams_are_independent(self, pipeline):
        pipeline.ingest("a", 1, "a1")
        pipeline.ingest("b", 1, "b1")
        assert pipeline.lines("a") == ["a1"]
        assert pipeline.lines("b") == ["b1"]


# ------------------------------------------------------------------ #
# Gap recovery
# ------------------------------------------------------------------ #


class TestGapRecovery:
    @pytest.mark.asyncio
    async def test_gap_filled_from_engine(self, pipeline, log_engine):
        for i in range(1, 6):
            log_engine.logs.append("s", f"line {i}")
        pipeline.ingest("s", 1, "line 1")
        pipeline.ingest("s", 5, "line 5")
        await pipeline.settle("s")
        assert pipeline.lines("s") == [f"line {i}" for i in range(1, 6)]
        assert pipeline.last_seq("s") == 5

    @pytest.mark.asyncio
    async def test_later_fragments_wait_for_recovery(self, pipeline, log_engine):
        for i in range(1, 5):
            log_engine.logs.append("s", f"line {i}")
        pipeline.ingest("s", 1, "line 1")
        pipeline.ingest("s", 3, "line 3")
        pipeline.ingest("s", 4, "line 4")
        assert pipeline.lines("s") == ["line 1"]
        await pipeline.settle("s")
        assert pipeline.lines("s") == ["line 1", "line 2", "line 3", "line 4"]

    @pytest.mark.asyncio
    async def test_anchored_stream_recovers_missing_first_fragment(self, pipeline, log_engine):
        pipeline.open_stream("s")
        log_engine.logs.append("s", "first")
        log_engine.logs.append("s", "second")
        pipeline.ingest("s", 2, "second")
        await pipeline.settle("s")
        assert pipeline.lines("s") == ["first", "second"]

    @pytest.mark.asyncio
    async def test_interleaved_streams_share_sequence_space(self, pipeline, log_engine):
        pipeline.open_stream("a")
        pipeline.open_stream("b")
        for key, text in (("a", "a1"), ("b", "b1"), ("a", "a2")):
            entry = log_engine.logs.append(key, text)
            pipeline.ingest(key, entry.seq, text)
        await pipeline.settle()
        assert pipeline.lines("a") == ["a1", "a2"]
        assert pipeline.lines("b") == ["b1"]

    @pytest.mark.asyncio
    async def test_failed_recovery_releases_held_lines_in_order(self):
        pipeline = LogDeliveryPipeline(BrokenFetchEngine(), recovery_interval=10)
        pipeline.open_stream("s")
        pipeline.ingest("s", 1, "one")
        pipeline.ingest("s", 4, "four")
        pipeline.ingest("s", 3, "three")
        await pipeline.settle("s")
        assert pipeline.lines("s") == ["one", "three", "four"]
        assert pipeline.last_seq("s") == 4

    @pytest.mark.asyncio
    async def test_lines_logged_during_a_fetch_are_recovered(self):
        engine = SlowFetchEngine()
        pipeline = LogDeliveryPipeline(engine, recovery_interval=10)
        for i in range(1, 4):
            engine.logs.append("s", f"l{i}")
        pipeline.open_stream("s")
        pipeline.ingest("s", 3, "l3")
        await asyncio.sleep(0)

        for i in range(4, 7):
            engine.logs.append("s", f"l{i}")
        pipeline.ingest("s", 6, "l6")
        await pipeline.settle("s")

        assert pipeline.lines("s") == [f"l{i}" for i in range(1, 7)]
        assert pipeline.last_seq("s") == 6
        assert engine.fetches == [0, 3]

    @pytest.mark.asyncio
    async def test_held_line_unknown_to_engine_released(self, pipeline, log_engine):
        log_engine.logs.append("s", "one")
        pipeline.ingest("s", 1, "one")
        pipeline.ingest("s", 3, "three")
        await pipeline.settle("s")
        assert pipeline.lines("s") == ["one", "three"]
        assert pipeline.last_seq("s") == 3


# ------------------------------------------------------------------ #
# Buffers
# ------------------------------------------------------------------ #


class TestBuffers:
    def test_buffer_keeps_most_recent_lines(self, pipeline):
        for i in range(1, 1101):
            pipeline.ingest("s", i, f"line {i}")
        lines = pipeline.lines("s")
        assert len(lines) == 1000
        assert lines[0] == "line 101"
        assert lines[-1] == "line 1100"

    def test_backlog_batch_trimmed_to_tail(self, pipeline):
        kept = pipeline.ingest_backlog("s", [f"line {i}" for i in range(12)])
        assert kept == 5
        assert pipeline.lines("s") == [f"line {i}" for i in range(7, 12)]
        assert pipeline.ingest_backlog("s", ["", ""]) == 0

    def test_preview_and_sink(self, pipeline):
        seen = []
        pipeline.sink = lambda key, line: seen.append((key, line))
        for i in range(1, 6):
            pipeline.ingest("s", i, f"line {i}")
        assert pipeline.preview("s") == ["line 3", "line 4", "line 5"]
        assert [line for _, line in seen] == [f"line {i}" for i in range(1, 6)]

    def test_sink_error_does_not_drop_line(self, pipeline):
        def broken(key, line):
            raise RuntimeError("sink crashed")

        pipeline.sink = broken
        pipeline.ingest("s", 1, "kept")
        assert pipeline.lines("s") == ["kept"]

    def test_reset_forgets_stream(self, pipeline):
        pipeline.ingest("s", 1, "a")
        pipeline.reset("s")
        assert not pipeline.has_stream("s")
        assert pipeline.lines("s") == []
        assert pipeline.last_seq("s") == 0


# ------------------------------------------------------------------ #
# Event intake & polling
# ------------------------------------------------------------------ #


class TestEventsAndPolling:
    @pytest.mark.asyncio
    async def test_events_for_unknown_streams_ignored(self, pipeline):
        await pipeline.on_event(_log_event("board-other", 1, "noise"))
        assert not pipeline.has_stream("board-other")

    @pytest.mark.asyncio
    async def test_events_for_open_stream_ingested(self, pipeline):
        pipeline.open_stream("s")
        await pipeline.on_event(_log_event("s", 1, "hello"))
        await pipeline.on_event(_log_event("s", 1, "hello"))
        assert pipeline.lines("s") == ["hello"]

    @pytest.mark.asyncio
    async def test_polling_catches_up_without_events(self, pipeline, log_engine):
        pipeline.open_stream("s")
        pipeline.start_polling("s")
        log_engine.logs.append("s", "quiet line")
        await asyncio.sleep(0.05)
        pipeline.stop_polling("s")
        assert pipeline.lines("s") == ["quiet line"]

    @pytest.mark.asyncio
    async def test_backlog_channel(self, pipeline):
        batches = [[f"chunk {i}" for i in range(8)]]

        async def backlog():
            return batches.pop() if batches else []

        pipeline.open_stream("s")
        pipeline.start_polling("s", backlog=backlog)
        await asyncio.sleep(0.05)
        pipeline.stop_polling("s")
        assert pipeline.lines("s") == [f"chunk {i}" for i in range(3, 8)]

    @pytest.mark.asyncio
    async def test_drain_collects_remaining_lines(self, pipeline, log_engine):
        pipeline.open_stream("s")
        log_engine.logs.append("s", "tail")
        await pipeline.drain("s")
        assert pipeline.lines("s") == ["tail"]

    @pytest.mark.asyncio
    async def test_close_cancels_polling(self, pipeline):
        pipeline.open_stream("s")
        pipeline.start_polling("s")
        await pipeline.close()
        assert not pipeline.has_stream("s")


class TestExplicitOptions:
    def test_explicit_zero_overrides_settings(self, monkeypatch):
        monkeypatch.setenv("FLOWSYNC_BACKLOG_TAIL_LINES", "4")
        reset_settings()
        pipeline = LogDeliveryPipeline(InMemorySyncEngine(), backlog_tail_lines=0)
        assert pipeline.ingest_backlog("s", ["a", "b", "c"]) == 0
        assert pipeline.lines("s") == []

    def test_settings_used_when_omitted(self, monkeypatch):
        monkeypatch.setenv("FLOWSYNC_BACKLOG_TAIL_LINES", "2")
        reset_settings()
        pipeline = LogDeliveryPipeline(InMemorySyncEngine())
        assert pipeline.ingest_backlog("s", ["a", "b", "c"]) == 2
        assert pipeline.lines("s") == ["b", "c"]
