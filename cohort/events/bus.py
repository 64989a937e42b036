"""Event Bus — pub/sub with wildcard matching.

Every coordination decision is emitted as a structured event. The bus
routes them to subscribers and keeps a bounded history for external
observability tooling.
Supports wildcards: "task.*" matches "task.announced", "task.awarded".
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Awaitable

from pydantic import BaseModel, Field

from cohort.types import new_id, utcnow

_logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]


class Event(BaseModel):
    """A structured telemetry event."""

    id: str = Field(default_factory=new_id)
    event_type: str
    event_data: dict[str, Any] = Field(default_factory=dict)
    agent_id: str = ""
    source: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class EventBus:
    """Async pub/sub event bus with wildcard matching on event types.

    Subscribe to "bid.*" to receive all bidding events.
    Subscribe to "*" to receive everything.
    """

    def __init__(self, history_limit: int = 500) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._history: list[Event] = []
        self._history_limit = history_limit
        self._lock = asyncio.Lock()

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        """Subscribe to events matching a type pattern."""
        self._subscribers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        """Remove a subscription."""
        handlers = self._subscribers.get(pattern, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(
        self,
        event_type: str,
        data: dict | None = None,
        agent_id: str = "",
        source: str = "",
    ) -> Event:
        """Emit an event to all matching subscribers."""
        event = Event(
            event_type=event_type,
            event_data=data or {},
            agent_id=agent_id,
            source=source,
        )

        async with self._lock:
            self._history.append(event)
            if len(self._history) > self._history_limit:
                self._history = self._history[-self._history_limit:]

        tasks = []
        for pattern, handlers in self._subscribers.items():
            if fnmatch.fnmatch(event_type, pattern):
                for handler in handlers:
                    tasks.append(handler(event))

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    _logger.warning(
                        "Event handler failed for '%s': %s", event_type, result,
                    )

        return event

    def history(self, type_filter: str = "*", limit: int = 50) -> list[Event]:
        """Get recent events (newest first), optionally filtered by type pattern."""
        if type_filter == "*":
            events = self._history
        else:
            events = [
                e for e in self._history
                if fnmatch.fnmatch(e.event_type, type_filter)
            ]
        return list(reversed(events[-limit:]))

    @property
    def subscriber_count(self) -> int:
        return sum(len(h) for h in self._subscribers.values())

    def event_types(self) -> list[str]:
        """Get all event types that have been emitted."""
        return list({e.event_type for e in self._history})
