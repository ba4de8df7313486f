"""Mission — a user's long-running goal, tracked through its plan."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from conductor.errors import InvalidTransitionError
from conductor.models import format_timestamp, generate_id, parse_timestamp, utcnow
from conductor.plan import Plan
from conductor.task import Task, TaskStatus


@dataclass
class Mission:
    title: str
    description: str = ""
    id: str = field(default_factory=generate_id)
    status: str = "active"  # active | paused | completed | abandoned
    priority: str = "medium"
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    plan: Plan | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    def set_plan(self, plan: Plan):
        self.plan = plan
        self.updated_at = utcnow()

    def get_tasks(self) -> list[Task]:
        return self.plan.tasks if self.plan else []

    def get_tasks_by_status(self, status: TaskStatus) -> list[Task]:
        return [t for t in self.get_tasks() if t.status == status]

    def get_next_task(self) -> Task | None:
        if self.plan is None:
            return None
        return self.plan.get_next_actionable_task()

    def get_current_task(self) -> Task | None:
        for task in self.get_tasks():
            if task.status == TaskStatus.RUNNING:
                return task
        return None

    def get_progress(self) -> int:
        """Completed percentage of the plan, 0 without one."""
        if self.plan is None:
            return 0
        return self.plan.get_progress_summary().percentage

    def pause(self):
        if self.status != "active":
            raise InvalidTransitionError("mission", self.id, self.status, "pause")
        self.status = "paused"
        self.updated_at = utcnow()

    def resume(self):
        if self.status != "paused":
            raise InvalidTransitionError("mission", self.id, self.status, "resume")
        self.status = "active"
        self.updated_at = utcnow()

    def complete(self):
        if self.is_finished():
            raise InvalidTransitionError("mission", self.id, self.status, "complete")
        self.status = "completed"
        self.completed_at = self.updated_at = utcnow()

    def abandon(self):
        if self.is_finished():
            raise InvalidTransitionError("mission", self.id, self.status, "abandon")
        self.status = "abandoned"
        self.completed_at = self.updated_at = utcnow()

    def is_finished(self) -> bool:
        return self.status in ("completed", "abandoned")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
            "plan": self.plan.to_dict() if self.plan else None,
            "progress": self.get_progress(),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "completed_at": format_timestamp(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Mission:
        return cls(
            id=data["id"],
            title=data["title"],
            description=data.get("description", ""),
            status=data.get("status", "active"),
            priority=data.get("priority", "medium"),
            tags=list(data.get("tags", [])),
            metadata=dict(data.get("metadata", {})),
            plan=Plan.from_dict(data["plan"]) if data.get("plan") else None,
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            updated_at=parse_timestamp(data.get("updated_at")) or utcnow(),
            completed_at=parse_timestamp(data.get("completed_at")),
        )
