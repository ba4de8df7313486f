"""Planner — LLM-generated plans and mid-execution replanning."""

from __future__ import annotations

import json
import logging
from typing import Literal, Sequence

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from conductor.models import AgentInfo, generate_id
from conductor.plan import Plan
from conductor.providers.base import ModelProvider
from conductor.task import Task, TaskDependency, TaskStatus

logger = logging.getLogger(__name__)

ReplanKind = Literal["add_tasks", "remove_tasks", "modify_tasks", "reorder", "no_change"]


class OutputSchema(BaseModel):
    # Models tend to answer in camelCase; accept both spellings
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SuggestedTask(OutputSchema):
    title: str = Field(description="Short task title")
    description: str = Field(description="What this task should accomplish")
    assigned_to: str = Field(description="Agent ID best suited for this task")
    dependencies: list[str] = Field(default_factory=list, description="Task titles that must complete before this one")


class PlannedTask(SuggestedTask):
    priority: Literal["low", "medium", "high"] | None = Field(default=None, description="Task priority")
    estimated_time: str | None = Field(default=None, description="Estimated time to complete (e.g. '5m', '1h')")


class PlanSchema(OutputSchema):
    goal: str = Field(description="The overall goal being accomplished")
    tasks: list[PlannedTask] = Field(description="Ordered list of tasks to execute")
    reasoning: str | None = Field(default=None, description="Explanation of the planning approach")


class ReplanCheck(OutputSchema):
    needs_replan: bool = Field(description="Whether the remaining plan needs to be modified")
    reasoning: str = Field(description="Brief explanation of why replan is or isn't needed")
    suggested_action: ReplanKind | None = Field(default=None, description="If replan needed, what type of change")


class TaskUpdate(OutputSchema):
    title: str | None = None
    description: str | None = None
    assigned_to: str | None = None
    priority: Literal["low", "medium", "high"] | None = None
    estimated_time: str | None = None


class ModifiedTask(OutputSchema):
    task_id: str
    updates: TaskUpdate


class ReplanAction(OutputSchema):
    action: ReplanKind = Field(description="What change to make to the plan")
    reasoning: str = Field(description="Why this change is needed")
    new_tasks: list[PlannedTask] = Field(default_factory=list, description="New tasks to add (for add_tasks)")
    remove_task_ids: list[str] = Field(default_factory=list, description="Task IDs to remove (for remove_tasks)")
    modified_tasks: list[ModifiedTask] = Field(default_factory=list, description="Tasks to modify (for modify_tasks)")
    new_order: list[str] = Field(default_factory=list, description="New task order by ID (for reorder)")


def agent_catalog(agents: Sequence[AgentInfo]) -> str:
    return "\n".join(f"- {a.id}: {a.name} - {a.description}" for a in agents)


def plan_from_tasks(goal: str, tasks: Sequence[SuggestedTask], metadata: dict | None = None) -> Plan:
    """Materialize suggested tasks as a Plan with ids task_1..task_n.

    Dependencies name other tasks by title and become required edges. A title
    that matches no task in the list is dropped with a warning.
    """
    created: list[Task] = []
    by_title: dict[str, Task] = {}
    for i, suggestion in enumerate(tasks):
        task = Task(
            id=f"task_{i + 1}",
            title=suggestion.title,
            description=suggestion.description,
            assigned_to=suggestion.assigned_to,
            priority=getattr(suggestion, "priority", None) or "medium",
            estimated_time=getattr(suggestion, "estimated_time", None),
        )
        created.append(task)
        by_title.setdefault(suggestion.title, task)

    for suggestion, task in zip(tasks, created):
        for title in suggestion.dependencies:
            dep = by_title.get(title)
            if dep is None:
                logger.warning(f"Task {task.id} depends on unknown task '{title}'; dependency dropped")
                continue
            if dep is task:
                logger.warning(f"Task {task.id} lists itself as a dependency; dependency dropped")
                continue
            task.dependencies.append(TaskDependency(task_id=dep.id))

    return Plan(goal=goal, tasks=created, metadata=dict(metadata or {}))


PLANNING_SYSTEM_PROMPT = """You are a planning expert. Create a detailed execution plan for the given goal.

Available agents:
{agents}

Guidelines:
- Break down complex goals into discrete, actionable tasks
- Assign each task to the most suitable agent
- Identify dependencies between tasks (use task titles)
- Prioritize tasks appropriately
- Consider parallel execution where possible
- Keep tasks focused and achievable"""

REPLAN_CHECK_SYSTEM_PROMPT = """You are analyzing whether an execution plan needs modification.

A task just completed. Review the result and determine if the remaining pending tasks still make sense, or if the plan needs adjustment.

Reasons to replan:
- The completed task revealed new information that changes requirements
- Some pending tasks are now unnecessary
- New tasks should be added based on what was learned
- Task order should change based on dependencies

Reasons NOT to replan:
- The result is as expected and pending tasks are still valid
- Minor variations that don't affect the overall plan"""

REPLAN_SYSTEM_PROMPT = """You are modifying an in-progress execution plan.
Current state:
{state}

The user wants to change the plan because: {reason}

Analyze the situation and decide what changes to make. Only unfinished tasks can be changed."""


class Planner:
    """Creates plans from goals and adjusts them while they run."""

    def __init__(self, provider: ModelProvider):
        self.provider = provider

    async def create_plan(self, goal: str, agents: Sequence[AgentInfo]) -> Plan:
        schema = await self.provider.generate_object(
            PlanSchema,
            prompt=f"Create a plan for: {goal}",
            system=PLANNING_SYSTEM_PROMPT.format(agents=agent_catalog(agents)),
        )
        plan = plan_from_tasks(goal, schema.tasks, metadata={"reasoning": schema.reasoning})
        logger.info(f"Created plan with {len(plan.tasks)} tasks for: {goal[:80]}")
        return plan

    async def check_replan_needed(self, plan: Plan, completed_task: Task) -> ReplanCheck:
        pending = [t for t in plan.tasks if not t.is_finished()]
        if not pending:
            return ReplanCheck(needs_replan=False, reasoning="All tasks finished, nothing left to replan")

        state = {
            "goal": plan.goal,
            "just_completed": {
                "id": completed_task.id,
                "title": completed_task.title,
                "result": (completed_task.result or "")[:500],
            },
            "completed_tasks": [
                {"id": t.id, "title": t.title} for t in plan.get_tasks_by_status(TaskStatus.COMPLETED)
            ],
            "pending_tasks": [
                {"id": t.id, "title": t.title, "description": t.description, "assigned_to": t.assigned_to}
                for t in pending
            ],
        }
        return await self.provider.generate_object(
            ReplanCheck,
            prompt=(
                f"Current execution state:\n{json.dumps(state, indent=2)}\n\n"
                "Should the remaining plan be modified based on this task's result?"
            ),
            system=REPLAN_CHECK_SYSTEM_PROMPT,
        )

    async def replan(self, plan: Plan, reason: str, variables: dict | None = None) -> ReplanAction:
        """Ask the model how to change `plan` and apply the answer in place."""
        state = {
            "goal": plan.goal,
            "completed_tasks": [
                {"id": t.id, "title": t.title, "result": t.result}
                for t in plan.get_tasks_by_status(TaskStatus.COMPLETED)
            ],
            "pending_tasks": [
                {"id": t.id, "title": t.title, "status": t.status.value}
                for t in plan.tasks
                if not t.is_finished()
            ],
            "variables": variables or {},
        }
        action = await self.provider.generate_object(
            ReplanAction,
            prompt=f"What changes should be made to the plan? Reason: {reason}",
            system=REPLAN_SYSTEM_PROMPT.format(state=json.dumps(state, indent=2, default=str), reason=reason),
        )
        apply_replan(plan, action)
        return action


def apply_replan(plan: Plan, action: ReplanAction):
    """Apply `action` to the unfinished part of `plan`. Finished tasks are never touched."""
    logger.info(f"Replan: {action.action} ({action.reasoning[:80]})")

    if action.action == "add_tasks":
        titles = {t.title: t.id for t in plan.tasks}
        for suggestion in action.new_tasks:
            task = Task(
                id=f"task_{len(plan.tasks) + 1}_{generate_id()[:6]}",
                title=suggestion.title,
                description=suggestion.description,
                assigned_to=suggestion.assigned_to,
                priority=suggestion.priority or "medium",
                estimated_time=suggestion.estimated_time,
                dependencies=[TaskDependency(task_id=titles[d]) for d in suggestion.dependencies if d in titles],
            )
            plan.add_task(task)
            titles.setdefault(task.title, task.id)

    elif action.action == "remove_tasks":
        for task_id in action.remove_task_ids:
            task = plan.get_task(task_id)
            if task is None or task.is_finished():
                logger.warning(f"Replan skipped removal of {task_id}: not an unfinished task")
                continue
            plan.update_task_status(task_id, TaskStatus.CANCELLED)

    elif action.action == "modify_tasks":
        for mod in action.modified_tasks:
            task = plan.get_task(mod.task_id)
            if task is None or task.is_finished():
                logger.warning(f"Replan skipped edit of {mod.task_id}: not an unfinished task")
                continue
            plan.edit_task(mod.task_id, **mod.updates.model_dump())

    elif action.action == "reorder":
        plan.order_unfinished(action.new_order)
