"""Test plan generation and replanning."""

import pytest

from conductor.errors import StructuredOutputError
from conductor.models import AgentInfo
from conductor.plan import Plan
from conductor.planner import (
    ModifiedTask,
    PlannedTask,
    Planner,
    ReplanAction,
    SuggestedTask,
    TaskUpdate,
    agent_catalog,
    apply_replan,
    plan_from_tasks,
)
from conductor.task import Task, TaskStatus

from conftest import fake_provider

AGENTS = [
    AgentInfo(id="researcher", name="Researcher", description="Finds facts"),
    AgentInfo(id="writer", name="Writer", description="Writes prose"),
]


def _suggest(title, agent="writer", deps=()):
    return SuggestedTask(title=title, description=f"do {title}", assigned_to=agent, dependencies=list(deps))


def test_agent_catalog():
    assert agent_catalog(AGENTS) == "- researcher: Researcher - Finds facts\n- writer: Writer - Writes prose"


def test_plan_from_tasks_links_dependencies_by_title():
    plan = plan_from_tasks("report", [
        _suggest("Research", agent="researcher"),
        _suggest("Write", deps=["Research"]),
        _suggest("Edit", deps=["Write", "Research"]),
    ])

    assert [t.id for t in plan.tasks] == ["task_1", "task_2", "task_3"]
    assert plan.get_task("task_2").required_dependency_ids() == ["task_1"]
    assert plan.get_task("task_3").required_dependency_ids() == ["task_2", "task_1"]
    assert plan.get_task("task_1").assigned_to == "researcher"


def test_plan_from_tasks_drops_unknown_and_self_dependencies():
    plan = plan_from_tasks("g", [_suggest("Write", deps=["Write", "Imaginary"])])
    assert plan.get_task("task_1").dependencies == []


def test_suggested_task_accepts_camel_case():
    task = PlannedTask.model_validate({
        "title": "Write",
        "description": "draft",
        "assignedTo": "writer",
        "estimatedTime": "5m",
        "priority": "high",
    })
    assert task.assigned_to == "writer"
    assert task.estimated_time == "5m"


@pytest.mark.asyncio
async def test_create_plan():
    provider = fake_provider({
        "goal": "report",
        "reasoning": "research first",
        "tasks": [
            {"title": "Research", "description": "find", "assignedTo": "researcher", "priority": "high"},
            {"title": "Write", "description": "write", "assignedTo": "writer", "dependencies": ["Research"]},
        ],
    })

    plan = await Planner(provider).create_plan("report", AGENTS)

    assert plan.goal == "report"
    assert plan.metadata["reasoning"] == "research first"
    assert plan.get_task("task_1").priority == "high"
    assert plan.get_task("task_2").priority == "medium"
    assert plan.get_task("task_2").required_dependency_ids() == ["task_1"]
    system = provider.adapter.calls[0]["system"]
    assert "- writer: Writer - Writes prose" in system


@pytest.mark.asyncio
async def test_create_plan_with_unparseable_reply():
    provider = fake_provider("I would start by researching.")
    with pytest.raises(StructuredOutputError):
        await Planner(provider).create_plan("report", AGENTS)


@pytest.mark.asyncio
async def test_check_replan_skips_model_when_nothing_is_left():
    plan = Plan(goal="g")
    task = plan.add_task(Task(id="a", title="only"))
    plan.update_task_status("a", TaskStatus.RUNNING)
    plan.update_task_status("a", TaskStatus.COMPLETED, "ok")
    provider = fake_provider()

    check = await Planner(provider).check_replan_needed(plan, task)

    assert not check.needs_replan
    assert provider.adapter.calls == []


@pytest.mark.asyncio
async def test_check_replan_asks_model():
    plan = plan_from_tasks("g", [_suggest("Research"), _suggest("Write", deps=["Research"])])
    plan.update_task_status("task_1", TaskStatus.RUNNING)
    plan.update_task_status("task_1", TaskStatus.COMPLETED, "the topic is obsolete")
    provider = fake_provider({"needsReplan": True, "reasoning": "obsolete", "suggestedAction": "remove_tasks"})

    check = await Planner(provider).check_replan_needed(plan, plan.get_task("task_1"))

    assert check.needs_replan
    assert check.suggested_action == "remove_tasks"
    assert "the topic is obsolete" in provider.adapter.calls[0]["messages"][0]["content"]


def _running_plan():
    plan = plan_from_tasks("g", [_suggest("Research"), _suggest("Write"), _suggest("Edit")])
    plan.update_task_status("task_1", TaskStatus.RUNNING)
    plan.update_task_status("task_1", TaskStatus.COMPLETED, "facts")
    return plan


def test_apply_add_tasks():
    plan = _running_plan()
    apply_replan(plan, ReplanAction(
        action="add_tasks",
        reasoning="need a summary",
        new_tasks=[PlannedTask(title="Summarize", description="tl;dr", assigned_to="writer", dependencies=["Edit"])],
    ))

    added = plan.tasks[-1]
    assert added.title == "Summarize"
    assert added.id.startswith("task_4_")
    assert added.required_dependency_ids() == ["task_3"]


def test_apply_remove_tasks_cancels_only_unfinished():
    plan = _running_plan()
    apply_replan(plan, ReplanAction(action="remove_tasks", reasoning="x", remove_task_ids=["task_1", "task_3", "zzz"]))

    assert plan.get_task("task_1").status == TaskStatus.COMPLETED
    assert plan.get_task("task_3").status == TaskStatus.CANCELLED
    assert len(plan.tasks) == 3


def test_apply_modify_tasks():
    plan = _running_plan()
    apply_replan(plan, ReplanAction(
        action="modify_tasks",
        reasoning="x",
        modified_tasks=[
            ModifiedTask(task_id="task_2", updates=TaskUpdate(assigned_to="researcher", priority="high")),
            ModifiedTask(task_id="task_1", updates=TaskUpdate(title="rewrite history")),
        ],
    ))

    assert plan.get_task("task_2").assigned_to == "researcher"
    assert plan.get_task("task_2").priority == "high"
    assert plan.get_task("task_2").title == "Write"
    assert plan.get_task("task_1").title == "Research"


def test_apply_reorder():
    plan = _running_plan()
    apply_replan(plan, ReplanAction(action="reorder", reasoning="x", new_order=["task_3", "task_2", "task_1"]))
    assert [t.id for t in plan.tasks] == ["task_1", "task_3", "task_2"]


def test_apply_no_change():
    plan = _running_plan()
    before = [t.to_dict() for t in plan.tasks]
    apply_replan(plan, ReplanAction(action="no_change", reasoning="fine"))
    assert [t.to_dict() for t in plan.tasks] == before


@pytest.mark.asyncio
async def test_replan_applies_model_answer():
    plan = _running_plan()
    provider = fake_provider({"action": "remove_tasks", "reasoning": "not needed", "removeTaskIds": ["task_3"]})

    action = await Planner(provider).replan(plan, "skip editing")

    assert action.action == "remove_tasks"
    assert plan.get_task("task_3").status == TaskStatus.CANCELLED
    assert "skip editing" in provider.adapter.calls[0]["system"]
