"""Plan — an ordered collection of tasks working toward one goal."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from conductor.errors import InvalidTransitionError
from conductor.models import format_timestamp, parse_timestamp, utcnow
from conductor.task import PRIORITY_RANK, Task, TaskDependency, TaskStatus


@dataclass
class PlanSummary:
    total: int = 0
    completed: int = 0
    running: int = 0
    pending: int = 0
    failed: int = 0
    blocked: int = 0
    cancelled: int = 0
    percentage: int = 0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "completed": self.completed,
            "running": self.running,
            "pending": self.pending,
            "failed": self.failed,
            "blocked": self.blocked,
            "cancelled": self.cancelled,
            "percentage": self.percentage,
        }


@dataclass
class Plan:
    """Ordered tasks plus the dependency rules that decide what can run next.

    All task mutation goes through the plan so `updated_at` stays accurate.
    """

    goal: str
    tasks: list[Task] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    # -- editing -------------------------------------------------------------

    def add_task(self, task: Task) -> Task:
        if self.get_task(task.id):
            raise ValueError(f"Task {task.id} already exists in plan")
        self.tasks.append(task)
        self._touch()
        return task

    def create_task(self, title: str, **config: Any) -> Task:
        if "dependencies" in config:
            config["dependencies"] = [
                d if isinstance(d, TaskDependency) else TaskDependency(task_id=d)
                for d in config["dependencies"]
            ]
        return self.add_task(Task(title=title, **config))

    def remove_task(self, task_id: str) -> bool:
        for i, task in enumerate(self.tasks):
            if task.id == task_id:
                del self.tasks[i]
                self._touch()
                return True
        return False

    def get_task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def update_task_status(self, task_id: str, status: TaskStatus, detail: str | None = None) -> Task:
        """Move a task to `status` through its transition methods."""
        task = self.get_task(task_id)
        if task is None:
            raise KeyError(f"Task {task_id} not found in plan")
        status = TaskStatus(status)
        if status == TaskStatus.RUNNING:
            task.start()
        elif status == TaskStatus.COMPLETED:
            task.complete(detail)
        elif status == TaskStatus.FAILED:
            task.fail(detail or "failed")
        elif status == TaskStatus.BLOCKED:
            task.block(detail or "blocked")
        elif status == TaskStatus.CANCELLED:
            task.cancel()
        elif status == TaskStatus.PENDING:
            task.unblock()
        self._touch()
        return task

    _EDITABLE = ("title", "description", "assigned_to", "priority", "estimated_time")

    def edit_task(self, task_id: str, **changes: Any) -> Task:
        """Change the descriptive fields of an unfinished task. None values are ignored."""
        task = self.get_task(task_id)
        if task is None:
            raise KeyError(f"Task {task_id} not found in plan")
        if task.is_finished():
            raise InvalidTransitionError("task", task.id, task.status.value, "edit")
        for key in changes:
            if key not in self._EDITABLE:
                raise ValueError(f"Task field '{key}' cannot be edited")
        priority = changes.get("priority")
        if priority is not None and priority not in PRIORITY_RANK:
            raise ValueError(f"Invalid priority '{priority}' for task {task_id}")
        for key, value in changes.items():
            if value is not None:
                setattr(task, key, value)
        task.updated_at = utcnow()
        self._touch()
        return task

    def reorder_tasks(self, from_index: int, to_index: int):
        if not (0 <= from_index < len(self.tasks)) or not (0 <= to_index < len(self.tasks)):
            raise IndexError(f"Invalid reorder indices {from_index} -> {to_index}")
        task = self.tasks.pop(from_index)
        self.tasks.insert(to_index, task)
        self._touch()

    def order_unfinished(self, task_ids: list[str]):
        """Permute the listed unfinished tasks among their own slots; everything else stays put."""
        rank = {task_id: i for i, task_id in enumerate(task_ids)}
        slots = [i for i, t in enumerate(self.tasks) if t.id in rank and not t.is_finished()]
        ordered = sorted((self.tasks[i] for i in slots), key=lambda t: rank[t.id])
        for i, task in zip(slots, ordered):
            self.tasks[i] = task
        self._touch()

    # -- scheduling queries ----------------------------------------------------

    def completed_ids(self) -> set[str]:
        return {t.id for t in self.tasks if t.status == TaskStatus.COMPLETED}

    def is_actionable(self, task: Task, completed: set[str] | None = None) -> bool:
        """PENDING with every required dependency COMPLETED in this plan."""
        if task.status != TaskStatus.PENDING:
            return False
        done = self.completed_ids() if completed is None else completed
        return all(dep_id in done for dep_id in task.required_dependency_ids())

    def get_next_actionable_task(self) -> Task | None:
        completed = self.completed_ids()
        for task in self.tasks:
            if self.is_actionable(task, completed):
                return task
        return None

    def get_all_actionable_tasks(self, max_tasks: int | None = None) -> list[Task]:
        completed = self.completed_ids()
        actionable = [t for t in self.tasks if self.is_actionable(t, completed)]
        if max_tasks is not None:
            return actionable[:max_tasks]
        return actionable

    def get_tasks_by_status(self, status: TaskStatus) -> list[Task]:
        return [t for t in self.tasks if t.status == status]

    def get_tasks_by_assignee(self, agent_id: str) -> list[Task]:
        return [t for t in self.tasks if t.assigned_to == agent_id]

    def get_progress_summary(self) -> PlanSummary:
        summary = PlanSummary(total=len(self.tasks))
        for task in self.tasks:
            count = getattr(summary, task.status.value)
            setattr(summary, task.status.value, count + 1)
        if summary.total:
            summary.percentage = round(summary.completed / summary.total * 100)
        return summary

    def is_complete(self) -> bool:
        return bool(self.tasks) and all(
            t.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED) for t in self.tasks
        )

    def has_failed_tasks(self) -> bool:
        return any(t.status == TaskStatus.FAILED for t in self.tasks)

    def has_blocked_tasks(self) -> bool:
        return any(t.status == TaskStatus.BLOCKED for t in self.tasks)

    def is_blocked(self) -> bool:
        """Pending work remains, nothing is running and nothing can start."""
        if any(t.status == TaskStatus.RUNNING for t in self.tasks):
            return False
        if not any(t.status == TaskStatus.PENDING for t in self.tasks):
            return False
        return self.get_next_actionable_task() is None

    def _touch(self):
        self.updated_at = utcnow()

    # -- serialization -------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "goal": self.goal,
            "tasks": [t.to_dict() for t in self.tasks],
            "metadata": dict(self.metadata),
            "progress": self.get_progress_summary().to_dict(),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Plan:
        return cls(
            goal=data["goal"],
            tasks=[Task.from_dict(t) for t in data.get("tasks", [])],
            metadata=dict(data.get("metadata", {})),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            updated_at=parse_timestamp(data.get("updated_at")) or utcnow(),
        )
