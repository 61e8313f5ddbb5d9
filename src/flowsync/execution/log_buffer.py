"""Sequenced ring buffer for engine log output.

Engine-side store that backs ``fetch_logs_since``: every appended line
gets a global, strictly increasing sequence number, and the oldest
entries are overwritten once the buffer is full. Consumers that missed
push events ask for everything after the last sequence they saw.

Thread-safe: engine adapters may append from a reader thread while the
event loop queries.
"""

from __future__ import annotations

import threading
from collections import deque

from flowsync.execution.engine import LogEntry

__all__ = ["SequencedLogBuffer", "DEFAULT_CAPACITY"]

DEFAULT_CAPACITY = 5000


class SequencedLogBuffer:
    """Fixed-capacity, sequence-numbered log store.

    Example:
        >>> buf = SequencedLogBuffer(capacity=3)
        >>> buf.append("board-1", "a").seq
        1
        >>> [e.message for e in buf.since("board-1", 0)]
        ['a']
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._seq = 0
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def current_seq(self) -> int:
        """Last sequence number handed out (0 before the first append)."""
        with self._lock:
            return self._seq

    def append(self, stream_key: str, message: str, level: str = "info") -> LogEntry:
        with self._lock:
            self._seq += 1
            entry = LogEntry(seq=self._seq, stream_key=stream_key, message=message, level=level)
            self._entries.append(entry)
            return entry

    def since(self, stream_key: str, after_seq: int) -> list[LogEntry]:
        """Entries with ``seq > after_seq``, sorted. Empty *stream_key* matches all streams."""
        with self._lock:
            found = [
                entry
                for entry in self._entries
                if entry.seq > after_seq and (not stream_key or entry.stream_key == stream_key)
            ]
        found.sort(key=lambda entry: entry.seq)
        return found

    def latest(self, stream_key: str, count: int) -> list[LogEntry]:
        """Newest *count* entries for a stream, oldest first."""
        if count <= 0:
            return []
        with self._lock:
            matching = [
                entry
                for entry in self._entries
                if not stream_key or entry.stream_key == stream_key
            ]
        return matching[-count:]

    def clear(self, stream_key: str | None = None) -> None:
        """Drop entries for one stream, or everything. Sequence numbers keep counting."""
        with self._lock:
            if not stream_key:
                self._entries.clear()
                return
            kept = [entry for entry in self._entries if entry.stream_key != stream_key]
            self._entries = deque(kept, maxlen=self._capacity)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
