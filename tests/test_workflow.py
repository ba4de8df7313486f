"""Test the workflow graph engine."""

import asyncio

import pytest

from conductor.errors import ConditionError, WorkflowError, WorkflowStateError
from conductor.models import ToolDef
from conductor.tools.registry import ToolRegistry
from conductor.worker import CallableWorker
from conductor.workflow import (
    ConditionNode,
    ExecutionGraph,
    WorkflowEngine,
    WorkflowEvent,
    evaluate_rule,
    parse_graph,
    resolve_arguments,
    substitute,
)

from conftest import echo_worker


def _graph(nodes, **extra):
    return {"id": "g1", "name": "test", "nodes": nodes, **extra}


def _registry():
    registry = ToolRegistry()

    @registry.tool("add", "Add two numbers", {"type": "object", "properties": {}})
    def add(a, b, context=None):
        return a + b

    @registry.tool("fail", "Always fails")
    def fail(context=None):
        raise RuntimeError("tool broke")

    return registry


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def test_parse_graph_accepts_camel_case_and_steps():
    graph = parse_graph({
        "id": "g1",
        "steps": [
            {"id": "start", "type": "start", "next": "ask"},
            {"id": "ask", "type": "agent", "config": {"agentId": "writer", "prompt": "hi"}, "next": "end"},
            {"id": "end", "type": "end"},
        ],
    })
    assert isinstance(graph, ExecutionGraph)
    assert graph.get_node("ask").config.agent_id == "writer"
    assert graph.entry_node().id == "start"


def test_parse_graph_rejects_unknown_references():
    with pytest.raises(WorkflowError):
        parse_graph(_graph([{"id": "start", "type": "start", "next": "nowhere"}]))


def test_parse_graph_rejects_duplicates_and_bad_types():
    with pytest.raises(WorkflowError):
        parse_graph(_graph([{"id": "a", "type": "end"}, {"id": "a", "type": "end"}]))
    with pytest.raises(WorkflowError):
        parse_graph(_graph([{"id": "a", "type": "teleport"}]))
    with pytest.raises(WorkflowError):
        parse_graph(_graph([]))


def test_condition_accepts_expression_alias():
    graph = parse_graph(_graph([
        {"id": "check", "type": "condition", "config": {"expression": "approved", "yes": "end"}},
        {"id": "end", "type": "end"},
    ]))
    node = graph.get_node("check")
    assert isinstance(node, ConditionNode)
    assert node.config.rule == "approved"


def test_entry_node_without_start():
    graph = parse_graph(_graph([{"id": "only", "type": "end"}]))
    assert graph.entry_node().id == "only"


def test_get_unknown_node():
    graph = parse_graph(_graph([{"id": "only", "type": "end"}]))
    with pytest.raises(WorkflowError):
        graph.get_node("missing")


# ---------------------------------------------------------------------------
# Variables and rules
# ---------------------------------------------------------------------------


def test_substitute():
    variables = {"name": "Ada", "review": {"score": 9}}
    assert substitute("Hi {{name}}, score {{ review.score }}", variables) == "Hi Ada, score 9"
    assert substitute("Missing: [{{nope}}]", variables) == "Missing: []"


def test_resolve_arguments_keeps_types():
    variables = {"n": 3, "items": [1, 2], "who": "Ada"}
    resolved = resolve_arguments({"a": "{{n}}", "b": ["{{items}}", "x-{{who}}"], "c": 7}, variables)
    assert resolved == {"a": 3, "b": [[1, 2], "x-Ada"], "c": 7}
    assert resolve_arguments("{{missing}}", variables) is None


def test_evaluate_rule_operators():
    variables = {"score": 0.9, "tags": ["a", "b"], "status": "ok", "empty": ""}
    assert evaluate_rule({"var": "score", "op": "gte", "value": 0.8}, variables)
    assert not evaluate_rule({"var": "score", "op": "lt", "value": 0.5}, variables)
    assert evaluate_rule({"var": "tags", "op": "contains", "value": "a"}, variables)
    assert evaluate_rule({"var": "status", "op": "in", "value": ["ok", "done"]}, variables)
    assert evaluate_rule({"var": "status", "op": "ne", "value": {"var": "empty"}}, variables)
    assert evaluate_rule({"var": "empty", "op": "falsy"}, variables)
    assert evaluate_rule({"var": "empty", "op": "exists"}, variables)
    assert not evaluate_rule({"var": "nope", "op": "exists"}, variables)


def test_evaluate_rule_combinators():
    variables = {"a": True, "b": False}
    assert evaluate_rule({"all": ["a", {"not": "b"}]}, variables)
    assert evaluate_rule({"any": ["b", "a"]}, variables)
    assert not evaluate_rule({"all": ["a", "b"]}, variables)
    assert evaluate_rule(True, variables)
    assert not evaluate_rule("missing", variables)


def test_evaluate_rule_errors():
    with pytest.raises(ConditionError):
        evaluate_rule({"var": "x", "op": "near"}, {"x": 1})
    with pytest.raises(ConditionError):
        evaluate_rule({"var": "x", "op": "gt", "value": 1}, {"x": "text"})
    with pytest.raises(ConditionError):
        evaluate_rule({"op": "eq"}, {})
    with pytest.raises(ConditionError):
        evaluate_rule(42, {})


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_linear_run_with_agent_and_tool():
    engine = WorkflowEngine(
        _graph([
            {"id": "start", "type": "start", "next": "sum"},
            {"id": "sum", "type": "tool", "config": {"toolName": "add", "arguments": {"a": "{{x}}", "b": 2}},
             "next": "tell"},
            {"id": "tell", "type": "agent", "config": {"agentId": "writer", "prompt": "Total is {{sum}}"},
             "next": "end"},
            {"id": "end", "type": "end"},
        ]),
        agents={"writer": echo_worker("writer", prefix="said: ")},
        tools=_registry(),
    )
    events = []
    engine.on("*", events.append)

    context_id = await engine.start_workflow({"x": 40})

    ctx = engine.get_context(context_id)
    assert ctx.status == "completed"
    assert ctx.variables["sum"] == 42
    assert ctx.variables["tell"] == "said: Total is 42"
    assert ctx.output["tell"] == "said: Total is 42"
    assert [h.node_id for h in ctx.history] == ["start", "sum", "tell", "end"]
    assert events[-1].type == WorkflowEvent.EXECUTION_COMPLETE
    assert engine.active_contexts() == []


@pytest.mark.asyncio
async def test_agent_receives_workflow_metadata():
    seen = {}

    def worker(prompt, metadata=None, **_):
        seen.update(metadata)
        return "ok"

    engine = WorkflowEngine(
        _graph([{"id": "ask", "type": "agent", "config": {"agentId": "w", "prompt": "p", "temperature": 0.1}}]),
        agents={"w": CallableWorker("w", worker)},
    )
    context_id = await engine.start_workflow()
    assert seen["context_id"] == context_id
    assert seen["node_id"] == "ask"
    assert seen["temperature"] == 0.1


@pytest.mark.asyncio
async def test_condition_branches():
    graph = _graph([
        {"id": "start", "type": "start", "next": "check"},
        {"id": "check", "type": "condition",
         "config": {"rule": {"var": "score", "op": "gte", "value": 5}, "yes": "good", "no": "bad"}},
        {"id": "good", "type": "tool", "config": {"toolName": "add", "arguments": {"a": 1, "b": 0}}},
        {"id": "bad", "type": "tool", "config": {"toolName": "add", "arguments": {"a": -1, "b": 0}}},
    ])
    engine = WorkflowEngine(graph, tools=_registry())

    high = engine.get_context(await engine.start_workflow({"score": 7}))
    low = engine.get_context(await engine.start_workflow({"score": 2}))

    assert high.variables["good"] == 1 and "bad" not in high.variables
    assert low.variables["bad"] == -1 and "good" not in low.variables
    assert high.variables["check"] is True


@pytest.mark.asyncio
async def test_condition_error_takes_no_branch():
    graph = _graph([
        {"id": "check", "type": "condition",
         "config": {"rule": {"var": "score", "op": "gt", "value": 5}, "yes": "good", "no": "bad"}},
        {"id": "good", "type": "end"},
        {"id": "bad", "type": "end"},
    ])
    engine = WorkflowEngine(graph)
    ctx = engine.get_context(await engine.start_workflow({"score": "high"}))
    assert ctx.status == "completed"
    assert [h.node_id for h in ctx.history] == ["check", "bad"]


@pytest.mark.asyncio
async def test_pause_and_resume():
    graph = _graph([
        {"id": "start", "type": "start", "next": "approve"},
        {"id": "approve", "type": "human_input",
         "config": {"prompt": "Approve {{item}}?", "requiredFields": [{"name": "approved", "type": "boolean"}]},
         "next": "check"},
        {"id": "check", "type": "condition", "config": {"rule": "approved", "yes": "ship", "no": "end"}},
        {"id": "ship", "type": "tool", "config": {"toolName": "add", "arguments": {"a": 1, "b": 1}}, "next": "end"},
        {"id": "end", "type": "end"},
    ])
    engine = WorkflowEngine(graph, tools=_registry())
    paused = []
    engine.on(WorkflowEvent.EXECUTION_PAUSED, paused.append)

    context_id = await engine.start_workflow({"item": "v2"})
    assert engine.get_status(context_id) == "paused"
    assert paused[0].data["prompt"] == "Approve v2?"
    assert paused[0].data["node_id"] == "approve"

    with pytest.raises(WorkflowError):
        await engine.resume_workflow(context_id, {"comment": "looks fine"})

    await engine.resume_workflow(context_id, {"approved": True})
    ctx = engine.get_context(context_id)
    assert ctx.status == "completed"
    assert ctx.variables["approve"] == {"approved": True}
    assert ctx.variables["ship"] == 2


@pytest.mark.asyncio
async def test_resume_errors():
    engine = WorkflowEngine(_graph([{"id": "end", "type": "end"}]))
    with pytest.raises(WorkflowError):
        await engine.resume_workflow("missing")

    context_id = await engine.start_workflow()
    with pytest.raises(WorkflowStateError):
        await engine.resume_workflow(context_id, {})


@pytest.mark.asyncio
async def test_failing_node_fails_run():
    engine = WorkflowEngine(
        _graph([
            {"id": "start", "type": "start", "next": "boom"},
            {"id": "boom", "type": "tool", "config": {"toolName": "fail"}, "next": "end"},
            {"id": "end", "type": "end"},
        ]),
        tools=_registry(),
    )
    failed = []
    engine.on(WorkflowEvent.EXECUTION_FAILED, failed.append)

    ctx = engine.get_context(await engine.start_workflow())

    assert ctx.status == "failed"
    assert ctx.error == "tool broke"
    assert ctx.history[-1].status == "failed"
    assert failed[0].data["node_id"] == "boom"


@pytest.mark.asyncio
async def test_missing_agent_and_tool_fail_run():
    engine = WorkflowEngine(_graph([{"id": "ask", "type": "agent", "config": {"agentId": "ghost", "prompt": "p"}}]))
    ctx = engine.get_context(await engine.start_workflow())
    assert ctx.status == "failed"
    assert "ghost" in ctx.error

    engine = WorkflowEngine(_graph([{"id": "t", "type": "tool", "config": {"toolName": "nope"}}]))
    ctx = engine.get_context(await engine.start_workflow())
    assert ctx.status == "failed"


@pytest.mark.asyncio
async def test_parallel_wait_all():
    graph = _graph([
        {"id": "start", "type": "start", "next": "fan"},
        {"id": "fan", "type": "parallel", "config": {"branches": ["left", "right"]}, "next": "join"},
        {"id": "left", "type": "tool", "config": {"toolName": "add", "arguments": {"a": 1, "b": 2}}},
        {"id": "right", "type": "agent", "config": {"agentId": "w", "prompt": "right side"}},
        {"id": "join", "type": "tool", "config": {"toolName": "add", "arguments": {"a": "{{left}}", "b": 10}}},
    ])
    engine = WorkflowEngine(graph, agents={"w": echo_worker("w")}, tools=_registry())

    ctx = engine.get_context(await engine.start_workflow())

    assert ctx.status == "completed"
    assert ctx.variables["fan"] == {"left": "done", "right": "done"}
    assert ctx.variables["right"] == "right side"
    assert ctx.variables["join"] == 13


@pytest.mark.asyncio
async def test_parallel_race():
    release = asyncio.Event()

    async def slow(prompt, **_):
        await release.wait()
        return "slow"

    graph = _graph([
        {"id": "fan", "type": "parallel", "config": {"branches": ["fast", "slow"], "mode": "race"}, "next": "end"},
        {"id": "fast", "type": "agent", "config": {"agentId": "fast", "prompt": "go"}},
        {"id": "slow", "type": "agent", "config": {"agentId": "slow", "prompt": "go"}, "next": "after"},
        {"id": "after", "type": "end"},
        {"id": "end", "type": "end"},
    ])
    engine = WorkflowEngine(graph, agents={"fast": echo_worker("fast"), "slow": CallableWorker("slow", slow)})

    context_id = await engine.start_workflow()
    release.set()
    await asyncio.sleep(0.01)

    ctx = engine.get_context(context_id)
    assert ctx.status == "completed"
    assert ctx.variables["fan"] == {"fast": "done", "slow": "abandoned"}
    assert "slow" not in ctx.variables
    assert "after" not in [h.node_id for h in ctx.history]


@pytest.mark.asyncio
async def test_cancel_paused_execution():
    graph = _graph([
        {"id": "wait", "type": "human_input", "next": "end"},
        {"id": "end", "type": "end"},
    ])
    engine = WorkflowEngine(graph)
    cancelled = []
    engine.on(WorkflowEvent.EXECUTION_CANCELLED, cancelled.append)

    context_id = await engine.start_workflow()
    assert engine.cancel_execution(context_id)
    assert engine.get_status(context_id) == "cancelled"
    assert len(cancelled) == 1
    assert not engine.cancel_execution(context_id)
    assert not engine.cancel_execution("missing")

    with pytest.raises(WorkflowStateError):
        await engine.resume_workflow(context_id, {})


@pytest.mark.asyncio
async def test_cancel_running_execution_drops_result():
    release = asyncio.Event()

    async def slow(prompt, **_):
        await release.wait()
        return "late"

    graph = _graph([
        {"id": "ask", "type": "agent", "config": {"agentId": "slow", "prompt": "p"}, "next": "end"},
        {"id": "end", "type": "end"},
    ])
    engine = WorkflowEngine(graph, agents={"slow": CallableWorker("slow", slow)})
    started = asyncio.Event()
    engine.on(WorkflowEvent.NODE_START, lambda event: started.set())

    run = asyncio.create_task(engine.start_workflow())
    await started.wait()
    context_id = engine.active_contexts()[0]
    assert engine.cancel_execution(context_id)
    release.set()
    await run

    ctx = engine.get_context(context_id)
    assert ctx.status == "cancelled"
    assert "ask" not in ctx.variables


@pytest.mark.asyncio
async def test_resume_refused_while_running():
    release = asyncio.Event()

    async def slow(prompt, **_):
        await release.wait()
        return "done"

    graph = _graph([
        {"id": "ask", "type": "agent", "config": {"agentId": "slow", "prompt": "p"}, "next": "end"},
        {"id": "end", "type": "end"},
    ])
    engine = WorkflowEngine(graph, agents={"slow": CallableWorker("slow", slow)})
    started = asyncio.Event()
    engine.on(WorkflowEvent.NODE_START, lambda event: started.set())

    run = asyncio.create_task(engine.start_workflow())
    await started.wait()
    context_id = engine.active_contexts()[0]
    assert engine.get_status(context_id) == "running"

    with pytest.raises(WorkflowStateError):
        await engine.resume_workflow(context_id, {"approved": True})

    release.set()
    await run
    ctx = engine.get_context(context_id)
    assert ctx.status == "completed"
    assert "approved" not in ctx.variables


@pytest.mark.asyncio
async def test_get_context_returns_copy():
    engine = WorkflowEngine(_graph([{"id": "end", "type": "end"}]))
    context_id = await engine.start_workflow({"x": 1})
    copy = engine.get_context(context_id)
    copy.variables["x"] = 99
    assert engine.get_context(context_id).variables["x"] == 1
    assert engine.get_context("missing") is None


@pytest.mark.asyncio
async def test_finished_history_is_bounded():
    engine = WorkflowEngine(_graph([{"id": "end", "type": "end"}]), keep_finished=2)
    ids = [await engine.start_workflow() for _ in range(3)]
    assert engine.get_status(ids[0]) is None
    assert engine.get_status(ids[2]) == "completed"


@pytest.mark.asyncio
async def test_register_refused_while_runs_are_live():
    engine = WorkflowEngine(_graph([{"id": "wait", "type": "human_input"}]))
    await engine.start_workflow()

    with pytest.raises(WorkflowStateError):
        engine.register_workflow({"id": "g2", "nodes": [{"id": "end", "type": "end"}]})


@pytest.mark.asyncio
async def test_start_unknown_graph():
    engine = WorkflowEngine()
    with pytest.raises(WorkflowError):
        await engine.start_workflow()

    engine.register_workflow(_graph([{"id": "end", "type": "end"}]))
    with pytest.raises(WorkflowError):
        await engine.start_workflow(graph_id="other")


@pytest.mark.asyncio
async def test_graph_variables_seed_the_run():
    engine = WorkflowEngine(
        _graph([{"id": "t", "type": "tool", "config": {"toolName": "add", "arguments": {"a": "{{base}}", "b": "{{x}}"}}}],
               variables={"base": 100}),
        tools=_registry(),
    )
    ctx = engine.get_context(await engine.start_workflow({"x": 5}))
    assert ctx.variables["t"] == 105
    assert ctx.input == {"x": 5}


def test_tool_def_registered_by_decorator():
    registry = _registry()
    assert isinstance(registry.get_def("add"), ToolDef)
