"""Shared data structures for Conductor."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def generate_id() -> str:
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp (accepts a trailing 'Z')."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Tool System
# ---------------------------------------------------------------------------


@dataclass
class ToolDef:
    """Canonical tool definition. Adapters translate this to provider-specific formats."""

    name: str
    description: str  # short, for the schema
    parameters: dict[str, Any]  # JSON Schema
    guidance: str = ""  # long, for the prompt


@dataclass
class ToolCall:
    name: str
    args: dict[str, Any]
    id: str = field(default_factory=lambda: f"tc_{uuid.uuid4().hex[:8]}")


@dataclass(frozen=True)
class ToolCallRecord:
    """A tool call a worker made while producing its answer, with the result it got."""

    name: str
    args: dict[str, Any]
    result: str | None = None
    id: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "args": self.args, "result": self.result}


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            self.input_tokens + other.input_tokens,
            self.output_tokens + other.output_tokens,
        )

    def to_dict(self) -> dict:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


@dataclass
class ModelResponse:
    text: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    raw: Any = None


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentInfo:
    """Catalog entry describing a worker agent to the planner."""

    id: str
    name: str
    description: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "description": self.description}


class CancellationToken:
    """Cooperative cancellation signal handed to every worker invocation.

    Setting it never interrupts a call in progress; the holder checks it at
    its own safe points.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self):
        await self._event.wait()


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass
class Message:
    from_id: str
    to_id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=generate_id)
    ts: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_id": self.from_id,
            "to_id": self.to_id,
            "content": self.content,
            "metadata": self.metadata,
            "ts": self.ts,
        }


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass
class Event:
    type: str
    source_id: str
    ts: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type, "source_id": self.source_id, "ts": self.ts, "data": self.data}


@dataclass(frozen=True)
class DelegationEvent:
    """Progress of one delegated task. Immutable once emitted."""

    task_id: str
    task_title: str
    agent_id: str
    agent_name: str
    status: str  # started | completed | failed
    result: str | None = None
    artifact_id: str | None = None
    error: str | None = None
    tool_calls: tuple[ToolCallRecord, ...] = ()
    timestamp: float = field(default_factory=time.time)
    type: str = "delegation"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "task_id": self.task_id,
            "task_title": self.task_title,
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "status": self.status,
            "result": self.result,
            "artifact_id": self.artifact_id,
            "error": self.error,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "timestamp": self.timestamp,
        }
