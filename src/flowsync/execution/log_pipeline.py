"""Log Delivery Pipeline - ordered, deduplicated engine output per stream.

WHY
───
Engine output arrives as ``log.entry`` events tagged with a stream key
and a global sequence number. Events can be duplicated, reordered or
lost. The pipeline keeps a cursor per stream so consumers see every
line once, in sequence order, in a bounded buffer.

ARCHITECTURE
────────────
::

    ingest(key, seq, text)
      seq == 0 ............................ append (unordered, never checked)
      seq <= cursor or already held ....... drop (duplicate)
      unanchored stream, first seq ........ baseline: append, cursor = seq
      seq == cursor + 1 ................... append, then release held successors
      seq >  cursor + 1 ................... hold, schedule recovery
                                             │
                                             ▼
    _recover(stream): fetch_logs_since(key, cursor)
      merge fetched + held up to the newest fetched seq, append in order;
      repeat while held fragments remain ahead of the cursor

    start_polling(key, backlog=None)
      ├── periodic _recover()   (sequenced catch-up, every recovery_interval)
      └── periodic backlog()    (coarse channel, tail K lines, every backlog_interval)

    Accepted lines ─► StreamState.lines (deque, FIFO trim) + preview + sink(key, text)

Streams opened with :meth:`LogDeliveryPipeline.open_stream` are *anchored*
at cursor 0, so a missing first fragment is recovered too. A stream first
seen through :meth:`LogDeliveryPipeline.ingest` is unanchored: its first
sequenced fragment sets the baseline.

Tags:
    flowsync, execution, logs, sequencing, gap-recovery

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field

from flowsync.core.events import Event
from flowsync.core.logging import get_logger
from flowsync.core.settings import get_settings
from flowsync.execution.engine import SyncEngine

logger = get_logger(__name__)

__all__ = ["LogDeliveryPipeline", "StreamState", "LineSink", "BacklogSource"]

LineSink = Callable[[str, str], None]
BacklogSource = Callable[[], Awaitable[list[str]]]


@dataclass
class StreamState:
    """Cursor and buffers for one stream. Owned by the pipeline."""

    key: str
    lines: deque[str]
    preview: deque[str]
    last_seq: int = 0
    anchored: bool = False
    held: dict[int, str] = field(default_factory=dict)
    backlog: BacklogSource | None = None
    recovery_task: asyncio.Task[None] | None = None
    poll_task: asyncio.Task[None] | None = None
    backlog_task: asyncio.Task[None] | None = None

    @property
    def recovering(self) -> bool:
        return self.recovery_task is not None and not self.recovery_task.done()


class LogDeliveryPipeline:
    """Per-stream ordering, dedup and gap recovery for engine log output.

    Parameters
    ----------
    engine : SyncEngine
        Source for recovery (``fetch_logs_since``).
    max_lines : int | None
        Per-stream buffer cap; oldest lines are evicted first.
    backlog_tail_lines : int | None
        K: only the last K lines of each coarse backlog batch are kept.
    preview_lines : int | None
        Size of the latest-lines preview.
    recovery_interval, backlog_interval : float | None
        Periods of the sequenced catch-up poll and the coarse backlog poll.
    sink : LineSink | None
        Called with ``(stream_key, line)`` for every accepted line, in order.
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        max_lines: int | None = None,
        backlog_tail_lines: int | None = None,
        preview_lines: int | None = None,
        recovery_interval: float | None = None,
        backlog_interval: float | None = None,
        sink: LineSink | None = None,
    ) -> None:
        settings = get_settings()
        self._engine = engine
        self._max_lines = max_lines if max_lines is not None else settings.stream_log_max_lines
        self._backlog_tail = (
            backlog_tail_lines if backlog_tail_lines is not None else settings.backlog_tail_lines
        )
        self._preview_size = preview_lines if preview_lines is not None else settings.preview_lines
        self._recovery_interval = (
            recovery_interval if recovery_interval is not None else settings.log_recovery_interval
        )
        self._backlog_interval = (
            backlog_interval if backlog_interval is not None else settings.log_poll_interval
        )
        self.sink = sink
        self._streams: dict[str, StreamState] = {}

    # ── Stream lifecycle ─────────────────────────────────────────────

    def open_stream(self, key: str) -> StreamState:
        """Start a fresh, anchored stream (cursor 0). Replaces existing state."""
        self.reset(key)
        stream = self._new_stream(key)
        stream.anchored = True
        return stream

    def start_polling(self, key: str, backlog: BacklogSource | None = None) -> None:
        """Run the periodic catch-up poll and, with *backlog*, the coarse backlog poll."""
        stream = self._streams.get(key) or self.open_stream(key)
        if stream.poll_task is None or stream.poll_task.done():
            stream.poll_task = asyncio.create_task(self._recovery_loop(stream))
        if backlog is not None:
            stream.backlog = backlog
            if stream.backlog_task is None or stream.backlog_task.done():
                stream.backlog_task = asyncio.create_task(self._backlog_loop(stream))
        logger.debug("log_pipeline.polling_started", stream_key=key, backlog=backlog is not None)

    def stop_polling(self, key: str) -> None:
        stream = self._streams.get(key)
        if stream is None:
            return
        for task in (stream.poll_task, stream.backlog_task):
            if task is not None and not task.done():
                task.cancel()
        stream.poll_task = None
        stream.backlog_task = None

    async def drain(self, key: str) -> None:
        """Final flush: wait for in-flight recovery, catch up once, pull the backlog."""
        stream = self._streams.get(key)
        if stream is None:
            return
        await self.settle(key)
        await self._recover(stream)
        if stream.backlog is not None:
            await self._pull_backlog(stream)

    async def settle(self, key: str | None = None) -> None:
        """Await in-flight recovery for one stream (or all)."""
        if key is None:
            streams = list(self._streams.values())
        else:
            stream = self._streams.get(key)
            streams = [stream] if stream is not None else []
        tasks = [s.recovery_task for s in streams if s.recovering]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def reset(self, key: str) -> None:
        """Forget a stream: cancel its tasks and drop its cursor and lines."""
        stream = self._streams.pop(key, None)
        if stream is None:
            return
        for task in (stream.poll_task, stream.backlog_task, stream.recovery_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()

    async def close(self) -> None:
        for key in list(self._streams):
            self.reset(key)

    # ── Ingestion ────────────────────────────────────────────────────

    def ingest(self, key: str, seq: int | None, text: str) -> bool:
        """Accept one fragment. Returns False when it was dropped as a duplicate."""
        stream = self._streams.get(key) or self._new_stream(key)

        if not seq or seq <= 0:
            self._append(stream, text)
            return True

        if seq <= stream.last_seq or seq in stream.held:
            logger.debug("log_pipeline.duplicate", stream_key=key, seq=seq, cursor=stream.last_seq)
            return False

        if not stream.anchored:
            stream.anchored = True
            self._advance(stream, seq, text)
            return True

        if seq == stream.last_seq + 1:
            self._advance(stream, seq, text)
            self._release_held(stream)
            return True

        stream.held[seq] = text
        logger.debug(
            "log_pipeline.gap_detected", stream_key=key, cursor=stream.last_seq, seq=seq
        )
        self._schedule_recovery(stream)
        return True

    def ingest_backlog(self, key: str, lines: Iterable[str]) -> int:
        """Append a coarse, unsequenced batch, keeping only its last K lines."""
        batch = [line for line in lines if line]
        if not batch:
            return 0
        stream = self._streams.get(key) or self._new_stream(key)
        tail = batch[max(len(batch) - self._backlog_tail, 0):]
        if len(tail) < len(batch):
            logger.debug(
                "log_pipeline.backlog_trimmed", stream_key=key, dropped=len(batch) - len(tail)
            )
        for line in tail:
            self._append(stream, line)
        return len(tail)

    async def on_event(self, event: Event) -> None:
        """EventBus handler for ``log.entry``. Events for unknown streams are ignored."""
        key = event.stream_key
        if not key or key not in self._streams:
            return
        self.ingest(key, event.seq, event.message)

    # ── Reads ────────────────────────────────────────────────────────

    def lines(self, key: str) -> list[str]:
        stream = self._streams.get(key)
        return list(stream.lines) if stream else []

    def preview(self, key: str) -> list[str]:
        """Latest few lines (for compact status displays)."""
        stream = self._streams.get(key)
        return list(stream.preview) if stream else []

    def last_seq(self, key: str) -> int:
        stream = self._streams.get(key)
        return stream.last_seq if stream else 0

    def has_stream(self, key: str) -> bool:
        return key in self._streams

    # ── Internals ────────────────────────────────────────────────────

    def _new_stream(self, key: str) -> StreamState:
        stream = StreamState(
            key=key,
            lines=deque(maxlen=self._max_lines),
            preview=deque(maxlen=self._preview_size),
        )
        self._streams[key] = stream
        return stream

    def _append(self, stream: StreamState, text: str) -> None:
        stream.lines.append(text)
        stream.preview.append(text)
        if self.sink is not None:
            try:
                self.sink(stream.key, text)
            except Exception as e:
                logger.warning("log_pipeline.sink_error", stream_key=stream.key, error=str(e))

    def _advance(self, stream: StreamState, seq: int, text: str) -> None:
        self._append(stream, text)
        stream.last_seq = seq

    def _release_held(self, stream: StreamState) -> None:
        while stream.last_seq + 1 in stream.held:
            seq = stream.last_seq + 1
            self._advance(stream, seq, stream.held.pop(seq))

    def _schedule_recovery(self, stream: StreamState) -> None:
        if stream.recovering:
            return
        stream.recovery_task = asyncio.create_task(self._recover(stream))

    async def _recover(self, stream: StreamState) -> None:
        """Catch up from the cursor until nothing held is still ahead of it.

        Only held fragments at or below the newest fetched seq are merged
        in; later ones wait for the next fetch, which may return the lines
        between them. When the engine has nothing newer, or the fetch
        fails, held fragments are released as they are.
        """
        while True:
            after = stream.last_seq
            try:
                entries = await self._engine.fetch_logs_since(stream.key, after)
            except Exception as e:
                logger.warning(
                    "log_pipeline.recovery_failed", stream_key=stream.key, after=after, error=str(e)
                )
                if self._streams.get(stream.key) is stream:
                    self._release_all_held(stream)
                return

            if self._streams.get(stream.key) is not stream:
                return

            fetched = {e.seq: e.message for e in entries if e.seq > stream.last_seq}
            if not fetched:
                if stream.held:
                    self._release_all_held(stream)
                return

            horizon = max(fetched)
            merged = dict(fetched)
            for seq in [s for s in stream.held if s <= horizon]:
                merged.setdefault(seq, stream.held.pop(seq))

            stream.anchored = True
            applied = 0
            for seq in sorted(merged):
                if seq > stream.last_seq:
                    self._advance(stream, seq, merged[seq])
                    applied += 1
            self._release_held(stream)
            logger.debug(
                "log_pipeline.recovered", stream_key=stream.key, after=after, applied=applied
            )
            if not stream.held:
                return
            logger.debug(
                "log_pipeline.recovery_continues",
                stream_key=stream.key,
                cursor=stream.last_seq,
                held=len(stream.held),
            )

    def _release_all_held(self, stream: StreamState) -> None:
        for seq in sorted(stream.held):
            if seq <= stream.last_seq:
                continue
            if stream.last_seq and seq != stream.last_seq + 1:
                logger.warning(
                    "log_pipeline.gap_unrecovered",
                    stream_key=stream.key,
                    missing_from=stream.last_seq + 1,
                    missing_to=seq - 1,
                )
            self._advance(stream, seq, stream.held[seq])
        stream.held.clear()
        stream.anchored = True

    async def _recovery_loop(self, stream: StreamState) -> None:
        while True:
            await asyncio.sleep(self._recovery_interval)
            if stream.recovering:
                continue
            stream.recovery_task = asyncio.create_task(self._recover(stream))
            await asyncio.wait([stream.recovery_task])

    async def _backlog_loop(self, stream: StreamState) -> None:
        while True:
            await asyncio.sleep(self._backlog_interval)
            await self._pull_backlog(stream)

    async def _pull_backlog(self, stream: StreamState) -> None:
        if stream.backlog is None:
            return
        try:
            lines = await stream.backlog()
        except Exception as e:
            logger.warning("log_pipeline.backlog_failed", stream_key=stream.key, error=str(e))
            return
        self.ingest_backlog(stream.key, lines)
