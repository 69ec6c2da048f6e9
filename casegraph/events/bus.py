"""In-process publish/subscribe.

Delivery is synchronous, in subscriber-registration order. A publish
that starts while another delivery is in flight is queued and delivered
after it, so every subscriber observes events in publish order. A
failing subscriber never affects its siblings: the failure is logged and
re-published as a ``system_error`` event.
"""

from __future__ import annotations

import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)

# Enumerated topics
ENTITY_CREATED = "entity:created"
ENTITY_UPDATED = "entity:updated"
ENTITY_REMOVED = "entity:removed"
LINK_CREATED = "link:created"
LINK_UPDATED = "link:updated"
LINK_REMOVED = "link:removed"
GRAPH_CLEARED = "graph:cleared"
INGESTION_COMMITTED = "ingestion:committed"
ANALYTICS_COMPLETED = "analytics:completed"
SELECTION_CHANGED = "selection:changed"
SYSTEM_ERROR = "system_error"

TOPICS: frozenset[str] = frozenset({
    ENTITY_CREATED, ENTITY_UPDATED, ENTITY_REMOVED,
    LINK_CREATED, LINK_UPDATED, LINK_REMOVED,
    GRAPH_CLEARED, INGESTION_COMMITTED, ANALYTICS_COMPLETED,
    SELECTION_CHANGED, SYSTEM_ERROR,
})

# Subscribe to every topic
ALL_TOPICS = "*"

STRUCTURAL_TOPICS: frozenset[str] = frozenset({
    ENTITY_CREATED, ENTITY_UPDATED, ENTITY_REMOVED,
    LINK_CREATED, LINK_UPDATED, LINK_REMOVED, GRAPH_CLEARED,
})


@dataclass
class Event:
    """A published event."""
    topic: str
    payload: dict[str, Any] = field(default_factory=dict)
    provenance: dict[str, Any] = field(default_factory=dict)
    sequence: int = 0


Handler = Callable[[Event], None]


class EventBus:
    """Topic → ordered subscriber list."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = {}
        self._queue: deque[Event] = deque()
        self._delivering = False
        self._sequence = itertools.count(1)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``topic`` (or ``"*"``). Returns an unsubscribe callable."""
        if topic != ALL_TOPICS and topic not in TOPICS:
            raise ValueError(f"Unknown topic: {topic!r}")
        self._subscribers.setdefault(topic, []).append(handler)

        def _unsubscribe() -> None:
            handlers = self._subscribers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def publish(
        self,
        topic: str,
        payload: dict[str, Any] | None = None,
        provenance: dict[str, Any] | None = None,
    ) -> Event:
        """Publish an event; queued if a delivery is already running."""
        if topic not in TOPICS:
            raise ValueError(f"Unknown topic: {topic!r}")
        event = Event(
            topic=topic,
            payload=payload or {},
            provenance=provenance or {},
            sequence=next(self._sequence),
        )
        self._queue.append(event)
        if not self._delivering:
            self._drain()
        return event

    @property
    def pending(self) -> int:
        return len(self._queue)

    def _drain(self) -> None:
        self._delivering = True
        try:
            while self._queue:
                self._deliver(self._queue.popleft())
        finally:
            self._delivering = False

    def _deliver(self, event: Event) -> None:
        handlers = list(self._subscribers.get(event.topic, []))
        handlers += self._subscribers.get(ALL_TOPICS, [])
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:
                logger.warning(
                    "Subscriber %r failed on %s: %s",
                    getattr(handler, "__qualname__", handler), event.topic, exc,
                    exc_info=True,
                )
                if event.topic != SYSTEM_ERROR:
                    self._queue.append(Event(
                        topic=SYSTEM_ERROR,
                        payload={
                            "error": {"name": type(exc).__name__, "message": str(exc)},
                            "context": {"topic": event.topic, "sequence": event.sequence},
                        },
                        provenance={"source": "event_bus"},
                        sequence=next(self._sequence),
                    ))
