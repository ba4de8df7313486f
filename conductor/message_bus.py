"""Message bus — per-agent mailboxes for collaboration between workers."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable

from conductor.models import Message

logger = logging.getLogger(__name__)

BROADCAST = "broadcast"

MessageListener = Callable[[Message], Any]


class MessageBus:
    """Queue-based messaging between worker agents.

    Sending to BROADCAST enqueues one copy for every other registered agent.
    Listeners registered for an agent are called synchronously on send;
    listeners on BROADCAST also hear direct messages.
    """

    def __init__(self, log_dir: Path | None = None):
        self._queues: dict[str, list[Message]] = defaultdict(list)
        self._listeners: dict[str, list[MessageListener]] = defaultdict(list)
        self._log_dir = log_dir
        self._subscribers: list[asyncio.Queue] = []

        if log_dir:
            log_dir.mkdir(parents=True, exist_ok=True)

    def register(self, agent_id: str):
        """Register an agent so broadcasts reach it."""
        if agent_id not in self._queues:
            self._queues[agent_id] = []

    def registered(self) -> list[str]:
        return list(self._queues.keys())

    def send(self, from_id: str, to_id: str, content: str, metadata: dict[str, Any] | None = None) -> Message:
        """Send a message from one agent to another (or to BROADCAST)."""
        msg = Message(from_id=from_id, to_id=to_id, content=content, metadata=dict(metadata or {}))
        if to_id == BROADCAST:
            for recipient in [k for k in self._queues if k != from_id]:
                self._queues[recipient].append(msg)
        else:
            self._queues[to_id].append(msg)

        self._log(msg)
        self._notify(msg)
        logger.debug(f"Message: {from_id} → {to_id}: {content[:80]}")
        return msg

    def broadcast(self, from_id: str, content: str, metadata: dict[str, Any] | None = None) -> Message:
        return self.send(from_id, BROADCAST, content, metadata)

    def receive(self, agent_id: str) -> list[Message]:
        """Drain and return all messages for an agent."""
        messages = self._queues.get(agent_id, [])
        if agent_id in self._queues:
            self._queues[agent_id] = []
        return messages

    def peek(self, agent_id: str) -> list[Message]:
        """Peek at messages without draining."""
        return list(self._queues.get(agent_id, []))

    def has_messages(self, agent_id: str) -> bool:
        return bool(self._queues.get(agent_id))

    def on_message(self, agent_id: str, callback: MessageListener) -> Callable[[], None]:
        """Call `callback` for messages to `agent_id` (or BROADCAST for all). Returns an unsubscribe function."""
        self._listeners[agent_id].append(callback)

        def unsubscribe():
            if callback in self._listeners[agent_id]:
                self._listeners[agent_id].remove(callback)

        return unsubscribe

    def subscribe(self) -> asyncio.Queue:
        """Subscribe to all messages (for event streaming)."""
        q: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue):
        if q in self._subscribers:
            self._subscribers.remove(q)

    def _log(self, msg: Message):
        if self._log_dir:
            log_file = self._log_dir / "messages.jsonl"
            with open(log_file, "a") as f:
                f.write(json.dumps(msg.to_dict(), default=str) + "\n")

    def _notify(self, msg: Message):
        targets = [msg.to_id]
        if msg.to_id != BROADCAST:
            targets.append(BROADCAST)
        for target in targets:
            for callback in list(self._listeners.get(target, [])):
                try:
                    callback(msg)
                except Exception as e:
                    logger.error(f"Message listener for {target} failed: {e}", exc_info=True)

        for q in self._subscribers:
            try:
                q.put_nowait(msg)
            except asyncio.QueueFull:
                pass
