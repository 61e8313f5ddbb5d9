"""
In-memory event bus.

Manifesto:
    The desktop process and the test suite both need engine notifications
    delivered immediately, without external infrastructure.

Events are dispatched inside the running event loop, to every matching
handler concurrently, and are never persisted. A failing handler is
logged and does not affect the others or the publisher.

Tags:
    flowsync, events, in-memory, asyncio, testing
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass

from flowsync.core.events import Event, EventHandler, pattern_matches
from flowsync.core.logging import get_logger

__all__ = ["InMemoryEventBus", "Subscription"]

logger = get_logger(__name__)


@dataclass(frozen=True)
class Subscription:
    id: str
    pattern: str
    handler: EventHandler


class InMemoryEventBus:
    """Single-loop event bus.

    Example::

        bus = InMemoryEventBus()
        sub_id = await bus.subscribe("unit.*", tracker.on_event)
        await bus.publish(Event("unit.completed", "engine", {"unit_id": "board-1"}))
        await bus.unsubscribe(sub_id)
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._ids = itertools.count(1)
        self._closed = False

    async def publish(self, event: Event) -> None:
        """Deliver *event* to every matching handler and wait for all of them."""
        if self._closed:
            logger.debug("events.dropped_closed", event_type=event.event_type)
            return
        targets = [
            sub for sub in self._subscriptions.values()
            if pattern_matches(sub.pattern, event.event_type)
        ]
        if targets:
            await asyncio.gather(*(self._deliver(sub, event) for sub in targets))

    async def subscribe(self, pattern: str, handler: EventHandler) -> str:
        if not pattern or ("*" in pattern and pattern != "*" and not pattern.endswith(".*")):
            raise ValueError(f"Unsupported event pattern: {pattern!r}")
        sub_id = f"sub-{next(self._ids)}"
        self._subscriptions[sub_id] = Subscription(sub_id, pattern, handler)
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        self._subscriptions.pop(subscription_id, None)

    async def close(self) -> None:
        """Drop every subscription; later publishes are ignored."""
        self._closed = True
        self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    @property
    def closed(self) -> bool:
        return self._closed

    async def _deliver(self, sub: Subscription, event: Event) -> None:
        try:
            await sub.handler(event)
        except Exception as e:
            logger.warning(
                "events.handler_error",
                subscription_id=sub.id,
                event_type=event.event_type,
                unit_id=event.unit_id,
                stream_key=event.stream_key,
                error=str(e),
            )
