"""Engine notifications: the ``unit.*`` / ``log.entry`` event model and bus contract.

The sync engine reports asynchronously: a unit starts, emits log text,
and reaches a terminal state. The completion tracker and the log
pipeline consume those notifications without importing the engine.

Delivery is best effort. A bus may drop or reorder events, so every
consumer has a polling fallback and must treat events as hints.

Payload keys by event type::

    unit.started | unit.progress             unit_id, (progress stats)
    unit.completed | unit.failed | unit.cancelled
                                             unit_id, status, message?
    log.entry                                stream_key, seq, message, level?

Modules
-------
memory      InMemoryEventBus (single process, asyncio)
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

__all__ = ["Event", "EventBus", "EventHandler", "pattern_matches"]


def pattern_matches(pattern: str, event_type: str) -> bool:
    """``*`` matches everything, ``unit.*`` a whole namespace, anything else exactly."""
    if pattern == "*":
        return True
    if pattern.endswith(".*"):
        return event_type.startswith(pattern[:-1])
    return event_type == pattern


@dataclass(frozen=True)
class Event:
    """One notification from the engine.

    The payload is read-only once the event exists; every subscriber sees
    the same object.
    """

    event_type: str
    source: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    @property
    def unit_id(self) -> str | None:
        return self.payload.get("unit_id") or None

    @property
    def stream_key(self) -> str | None:
        return self.payload.get("stream_key") or None

    @property
    def seq(self) -> int:
        """Sequence number of a log fragment; 0 when absent (unordered)."""
        return int(self.payload.get("seq") or 0)

    @property
    def message(self) -> str:
        return str(self.payload.get("message", ""))

    def matches(self, *patterns: str) -> bool:
        """True if any of *patterns* matches this event's type."""
        return any(pattern_matches(pattern, self.event_type) for pattern in patterns)


EventHandler = Callable[[Event], Awaitable[None]]


@runtime_checkable
class EventBus(Protocol):
    """What the orchestrator and engines need from a bus."""

    async def publish(self, event: Event) -> None:
        ...

    async def subscribe(self, pattern: str, handler: EventHandler) -> str:
        """Register *handler* for events matching *pattern*; returns a subscription id."""
        ...

    async def unsubscribe(self, subscription_id: str) -> None:
        ...

    async def close(self) -> None:
        ...
