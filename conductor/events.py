"""Event system — append-only log with streaming and listener support."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable

from conductor.models import DelegationEvent, Event

logger = logging.getLogger(__name__)

Listener = Callable[[Event], Any]

# Matches every event type in `on()`
ANY_EVENT = "*"


class EventBus:
    """Append-only event log.

    Two ways to follow it: `subscribe()` hands out an asyncio.Queue for
    streaming consumers, `on()` registers a synchronous callback.
    """

    def __init__(self, log_file: Path | None = None, max_history: int = 5000):
        self._log_file = log_file
        self._max_history = max_history
        self._subscribers: list[asyncio.Queue] = []
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._history: list[Event] = []

        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, event: Event):
        """Emit an event — log and notify subscribers."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            del self._history[: len(self._history) - self._max_history]
        self._persist(event)
        self._notify(event)
        logger.debug(f"Event: {event.type} [{event.source_id}] {event.data}")

    def emit_simple(self, type: str, source_id: str, **data):
        """Convenience: emit with keyword args."""
        self.emit(Event(type=type, source_id=source_id, data=data))

    def emit_delegation(self, event: DelegationEvent, source_id: str = "orchestrator"):
        self.emit(Event(type="delegation", source_id=source_id, ts=event.timestamp, data=event.to_dict()))

    def recent(self, limit: int = 50, offset: int = 0) -> list[Event]:
        """Get recent events (paginated)."""
        start = max(0, len(self._history) - offset - limit)
        end = max(0, len(self._history) - offset)
        return self._history[start:end]

    def subscribe(self) -> asyncio.Queue:
        """Subscribe to live events."""
        q: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue):
        if q in self._subscribers:
            self._subscribers.remove(q)

    def on(self, event_type: str, callback: Listener) -> Callable[[], None]:
        """Call `callback` for every event of `event_type` ("*" for all). Returns an unsubscribe function."""
        self._listeners[event_type].append(callback)

        def off():
            if callback in self._listeners[event_type]:
                self._listeners[event_type].remove(callback)

        return off

    def _persist(self, event: Event):
        if self._log_file:
            with open(self._log_file, "a") as f:
                f.write(json.dumps(event.to_dict(), default=str) + "\n")

    def _notify(self, event: Event):
        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Event subscriber queue full, dropping {event.type}")

        for callback in [*self._listeners.get(event.type, []), *self._listeners.get(ANY_EVENT, [])]:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event listener for {event.type} failed: {e}", exc_info=True)
