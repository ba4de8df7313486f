"""Task — the unit of work a worker agent is delegated."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from conductor.errors import InvalidTransitionError
from conductor.models import format_timestamp, generate_id, parse_timestamp, utcnow


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

PRIORITY_RANK = {"low": 0, "medium": 1, "high": 2}


@dataclass
class TaskDependency:
    task_id: str
    type: str = "required"  # required | optional

    def to_dict(self) -> dict:
        return {"task_id": self.task_id, "type": self.type}

    @classmethod
    def from_dict(cls, data: dict) -> TaskDependency:
        return cls(task_id=data["task_id"], type=data.get("type", "required"))


def format_duration(seconds: float) -> str:
    """Render an elapsed time as '2h 5m', '3m 12s' or '40s'."""
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, mins = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}h {mins}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


@dataclass
class Task:
    """A unit of work with a lifecycle. Owned by exactly one Plan."""

    title: str
    description: str = ""
    id: str = field(default_factory=generate_id)
    status: TaskStatus = TaskStatus.PENDING
    assigned_to: str | None = None
    priority: str = "medium"  # low | medium | high
    estimated_time: str | None = None
    actual_time: str | None = None
    dependencies: list[TaskDependency] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    result: str | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def __post_init__(self):
        if self.priority not in PRIORITY_RANK:
            raise ValueError(f"Invalid priority '{self.priority}' for task {self.id}")

    # -- transitions ---------------------------------------------------------

    def start(self):
        if self.status != TaskStatus.PENDING:
            raise InvalidTransitionError("task", self.id, self.status.value, "start")
        self.status = TaskStatus.RUNNING
        self.started_at = utcnow()
        self._touch()

    def complete(self, result: str | None = None):
        if self.status != TaskStatus.RUNNING:
            raise InvalidTransitionError("task", self.id, self.status.value, "complete")
        self.status = TaskStatus.COMPLETED
        self.result = result
        self.completed_at = utcnow()
        if self.started_at:
            self.actual_time = format_duration((self.completed_at - self.started_at).total_seconds())
        self._touch()

    def fail(self, error: str):
        if self.status in TERMINAL_STATUSES:
            raise InvalidTransitionError("task", self.id, self.status.value, "fail")
        self.status = TaskStatus.FAILED
        self.error = error
        self.completed_at = utcnow()
        self._touch()

    def block(self, reason: str):
        if self.status in TERMINAL_STATUSES:
            raise InvalidTransitionError("task", self.id, self.status.value, "block")
        self.status = TaskStatus.BLOCKED
        self.error = reason
        self._touch()

    def unblock(self):
        if self.status != TaskStatus.BLOCKED:
            raise InvalidTransitionError("task", self.id, self.status.value, "unblock")
        self.status = TaskStatus.PENDING
        self.error = None
        self._touch()

    def cancel(self):
        self.status = TaskStatus.CANCELLED
        self.completed_at = utcnow()
        self._touch()

    # -- queries -------------------------------------------------------------

    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def required_dependency_ids(self) -> list[str]:
        return [d.task_id for d in self.dependencies if d.type == "required"]

    @property
    def priority_rank(self) -> int:
        return PRIORITY_RANK[self.priority]

    def _touch(self):
        self.updated_at = utcnow()

    # -- serialization -------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "assigned_to": self.assigned_to,
            "priority": self.priority,
            "estimated_time": self.estimated_time,
            "actual_time": self.actual_time,
            "dependencies": [d.to_dict() for d in self.dependencies],
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
            "result": self.result,
            "error": self.error,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "started_at": format_timestamp(self.started_at),
            "completed_at": format_timestamp(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Task:
        return cls(
            id=data["id"],
            title=data["title"],
            description=data.get("description", ""),
            status=TaskStatus(data.get("status", "pending")),
            assigned_to=data.get("assigned_to"),
            priority=data.get("priority", "medium"),
            estimated_time=data.get("estimated_time"),
            actual_time=data.get("actual_time"),
            dependencies=[TaskDependency.from_dict(d) for d in data.get("dependencies", [])],
            tags=list(data.get("tags", [])),
            metadata=dict(data.get("metadata", {})),
            result=data.get("result"),
            error=data.get("error"),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            updated_at=parse_timestamp(data.get("updated_at")) or utcnow(),
            started_at=parse_timestamp(data.get("started_at")),
            completed_at=parse_timestamp(data.get("completed_at")),
        )
