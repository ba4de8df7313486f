"""Test core data structures: tasks, plans and missions."""

import pytest

from conductor.errors import InvalidTransitionError
from conductor.mission import Mission
from conductor.models import DelegationEvent, Message, ToolCallRecord, generate_id
from conductor.plan import Plan
from conductor.task import Task, TaskDependency, TaskStatus, format_duration


def test_generate_id():
    id1 = generate_id()
    id2 = generate_id()
    assert len(id1) == 12
    assert id1 != id2


def test_task_defaults():
    task = Task(title="test task")
    assert task.status == TaskStatus.PENDING
    assert task.assigned_to is None
    assert task.priority == "medium"
    assert task.dependencies == []
    assert task.id


def test_task_rejects_unknown_priority():
    with pytest.raises(ValueError):
        Task(title="x", priority="urgent")


def test_task_lifecycle():
    task = Task(title="write")
    task.start()
    assert task.status == TaskStatus.RUNNING
    assert task.started_at is not None

    task.complete("done")
    assert task.status == TaskStatus.COMPLETED
    assert task.result == "done"
    assert task.completed_at is not None
    assert task.actual_time is not None
    assert task.is_finished()


def test_task_invalid_transitions():
    task = Task(id="t1", title="write")
    with pytest.raises(InvalidTransitionError):
        task.complete("too early")

    task.start()
    with pytest.raises(InvalidTransitionError):
        task.start()

    task.fail("boom")
    with pytest.raises(InvalidTransitionError) as exc:
        task.block("later")
    assert "t1" in str(exc.value)


def test_task_block_and_unblock():
    task = Task(title="wait")
    task.block("waiting on review")
    assert task.status == TaskStatus.BLOCKED
    assert task.error == "waiting on review"

    task.unblock()
    assert task.status == TaskStatus.PENDING
    assert task.error is None


def test_cancel_from_any_state():
    task = Task(title="x")
    task.start()
    task.cancel()
    assert task.status == TaskStatus.CANCELLED


def test_format_duration():
    assert format_duration(40) == "40s"
    assert format_duration(192) == "3m 12s"
    assert format_duration(7500) == "2h 5m"


def test_task_round_trip():
    task = Task(
        id="a",
        title="research",
        description="dig",
        assigned_to="researcher",
        priority="high",
        dependencies=[TaskDependency("b"), TaskDependency("c", type="optional")],
        tags=["x"],
    )
    task.start()
    restored = Task.from_dict(task.to_dict())
    assert restored.id == "a"
    assert restored.status == TaskStatus.RUNNING
    assert restored.priority == "high"
    assert restored.required_dependency_ids() == ["b"]
    assert restored.dependencies[1].type == "optional"
    assert restored.started_at == task.started_at


def _chain_plan() -> Plan:
    plan = Plan(goal="report")
    plan.create_task("research", id="a", assigned_to="r")
    plan.create_task("write", id="b", assigned_to="w", dependencies=["a"])
    plan.create_task("review", id="c", assigned_to="w", dependencies=["b"])
    return plan


def test_plan_actionable_follows_dependencies():
    plan = _chain_plan()
    assert [t.id for t in plan.get_all_actionable_tasks()] == ["a"]

    plan.update_task_status("a", TaskStatus.RUNNING)
    assert plan.get_next_actionable_task() is None

    plan.update_task_status("a", TaskStatus.COMPLETED, "notes")
    assert plan.get_next_actionable_task().id == "b"


def test_optional_dependency_does_not_gate():
    plan = Plan(goal="g")
    plan.create_task("first", id="a")
    plan.create_task("second", id="b", dependencies=[TaskDependency("a", type="optional")])
    assert [t.id for t in plan.get_all_actionable_tasks()] == ["a", "b"]
    assert len(plan.get_all_actionable_tasks(max_tasks=1)) == 1


def test_failed_dependency_blocks_plan():
    plan = _chain_plan()
    plan.update_task_status("a", TaskStatus.RUNNING)
    plan.update_task_status("a", TaskStatus.FAILED, "no sources")

    assert plan.has_failed_tasks()
    assert plan.get_next_actionable_task() is None
    assert plan.is_blocked()
    assert not plan.is_complete()


def test_plan_add_duplicate_task():
    plan = _chain_plan()
    with pytest.raises(ValueError):
        plan.add_task(Task(id="a", title="again"))


def test_plan_update_unknown_task():
    plan = _chain_plan()
    with pytest.raises(KeyError):
        plan.update_task_status("nope", TaskStatus.RUNNING)


def test_plan_progress_summary():
    plan = _chain_plan()
    plan.update_task_status("a", TaskStatus.RUNNING)
    plan.update_task_status("a", TaskStatus.COMPLETED, "ok")
    plan.update_task_status("b", TaskStatus.CANCELLED)

    summary = plan.get_progress_summary()
    assert summary.total == 3
    assert summary.completed == 1
    assert summary.cancelled == 1
    assert summary.pending == 1
    assert summary.percentage == 33


def test_plan_complete_counts_cancelled():
    plan = Plan(goal="g")
    plan.create_task("one", id="a")
    plan.create_task("two", id="b")
    assert not plan.is_complete()

    plan.update_task_status("a", TaskStatus.RUNNING)
    plan.update_task_status("a", TaskStatus.COMPLETED, "ok")
    plan.update_task_status("b", TaskStatus.CANCELLED)
    assert plan.is_complete()


def test_empty_plan_is_not_complete():
    assert not Plan(goal="g").is_complete()


def test_plan_reorder_and_remove():
    plan = _chain_plan()
    plan.reorder_tasks(2, 0)
    assert [t.id for t in plan.tasks] == ["c", "a", "b"]

    with pytest.raises(IndexError):
        plan.reorder_tasks(0, 5)

    assert plan.remove_task("c")
    assert not plan.remove_task("c")


def test_edit_task():
    plan = _chain_plan()
    plan.edit_task("b", title="write draft", priority="high", description=None)
    task = plan.get_task("b")
    assert task.title == "write draft"
    assert task.priority == "high"
    assert task.description == ""

    with pytest.raises(ValueError):
        plan.edit_task("b", status="completed")
    with pytest.raises(ValueError):
        plan.edit_task("b", priority="urgent")


def test_edit_finished_task_is_refused():
    plan = _chain_plan()
    plan.update_task_status("a", TaskStatus.RUNNING)
    plan.update_task_status("a", TaskStatus.COMPLETED, "ok")
    with pytest.raises(InvalidTransitionError):
        plan.edit_task("a", title="rewrite")


def test_order_unfinished_keeps_finished_in_place():
    plan = _chain_plan()
    plan.create_task("publish", id="d")
    plan.update_task_status("a", TaskStatus.RUNNING)
    plan.update_task_status("a", TaskStatus.COMPLETED, "ok")

    plan.order_unfinished(["d", "a", "c", "b"])
    assert [t.id for t in plan.tasks] == ["a", "d", "c", "b"]


def test_plan_round_trip():
    plan = _chain_plan()
    plan.update_task_status("a", TaskStatus.RUNNING)
    data = plan.to_dict()
    assert data["progress"]["running"] == 1

    restored = Plan.from_dict(data)
    assert restored.goal == "report"
    assert [t.id for t in restored.tasks] == ["a", "b", "c"]
    assert restored.get_task("b").required_dependency_ids() == ["a"]


def test_mission_progress_and_transitions():
    mission = Mission(title="Ship it")
    assert mission.get_progress() == 0
    assert mission.get_next_task() is None

    plan = _chain_plan()
    mission.set_plan(plan)
    assert mission.get_next_task().id == "a"

    plan.update_task_status("a", TaskStatus.RUNNING)
    assert mission.get_current_task().id == "a"
    plan.update_task_status("a", TaskStatus.COMPLETED, "ok")
    assert mission.get_progress() == 33
    assert [t.id for t in mission.get_tasks_by_status(TaskStatus.COMPLETED)] == ["a"]

    mission.pause()
    with pytest.raises(InvalidTransitionError):
        mission.pause()
    mission.resume()
    mission.complete()
    assert mission.is_finished()
    with pytest.raises(InvalidTransitionError):
        mission.abandon()


def test_mission_round_trip():
    mission = Mission(title="Ship it", description="all of it", tags=["q3"])
    mission.set_plan(_chain_plan())
    restored = Mission.from_dict(mission.to_dict())
    assert restored.id == mission.id
    assert restored.plan.goal == "report"
    assert restored.tags == ["q3"]


def test_message():
    msg = Message(from_id="alice", to_id="bob", content="hello")
    d = msg.to_dict()
    assert d["from_id"] == "alice"
    assert d["to_id"] == "bob"
    assert d["content"] == "hello"
    assert "ts" in d


def test_delegation_event_to_dict():
    event = DelegationEvent(
        task_id="a",
        task_title="research",
        agent_id="r",
        agent_name="Researcher",
        status="completed",
        result="notes",
        tool_calls=(ToolCallRecord(name="search", args={"q": "x"}, result="hit"),),
    )
    d = event.to_dict()
    assert d["type"] == "delegation"
    assert d["status"] == "completed"
    assert d["tool_calls"][0]["name"] == "search"
