"""Test worker agents."""

import pytest

from conductor.models import CancellationToken, ModelResponse, TokenUsage, ToolCall, ToolDef
from conductor.providers.base import ModelProvider
from conductor.tools.registry import ToolRegistry
from conductor.worker import CallableWorker, LLMWorker, WorkerResponse

from conftest import FakeAdapter


def _lookup_registry():
    registry = ToolRegistry()

    @registry.tool("lookup", "Look up a fact", {"type": "object", "properties": {"key": {"type": "string"}}})
    def lookup(key, context=None):
        return f"{key}={context.agent_id}"

    return registry


@pytest.mark.asyncio
async def test_llm_worker_runs_tool_loop():
    adapter = FakeAdapter([
        ModelResponse(text="checking", tool_calls=[ToolCall(name="lookup", args={"key": "sun"}, id="tc1")],
                      usage=TokenUsage(5, 2)),
        ModelResponse(text="The sun is a star.", usage=TokenUsage(7, 4)),
    ])
    worker = LLMWorker("researcher", name="Researcher", provider=ModelProvider(adapter), registry=_lookup_registry())

    response = await worker.invoke("what is the sun?", context=[{"role": "user", "content": "earlier"}])

    assert response.text == "The sun is a star."
    assert response.tool_calls[0].result == "sun=researcher"
    assert response.usage.input_tokens == 12
    second_call = adapter.calls[1]["messages"]
    assert second_call[0]["content"] == "earlier"
    assert second_call[-1] == {"role": "tool", "tool_use_id": "tc1", "name": "lookup", "content": "sun=researcher"}
    assert "You are Researcher." in adapter.calls[0]["system"]


@pytest.mark.asyncio
async def test_llm_worker_unknown_tool_is_reported_to_model():
    adapter = FakeAdapter([
        ModelResponse(tool_calls=[ToolCall(name="teleport", args={}, id="tc1")]),
        "gave up",
    ])
    worker = LLMWorker("w", provider=ModelProvider(adapter))

    response = await worker.invoke("go")

    assert response.text == "gave up"
    assert response.tool_calls[0].result == "Error: Unknown tool 'teleport'"


@pytest.mark.asyncio
async def test_llm_worker_stops_at_max_iterations():
    looping = [ModelResponse(tool_calls=[ToolCall(name="lookup", args={"key": "k"})]) for _ in range(2)]
    worker = LLMWorker("w", provider=ModelProvider(FakeAdapter(looping)), registry=_lookup_registry(), max_iterations=2)

    response = await worker.invoke("loop")

    assert len(response.tool_calls) == 2


@pytest.mark.asyncio
async def test_llm_worker_honors_cancellation():
    adapter = FakeAdapter(["never used"])
    token = CancellationToken()
    token.cancel("stop")

    response = await LLMWorker("w", provider=ModelProvider(adapter)).invoke("x", cancel_token=token)

    assert response.text == ""
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_llm_worker_stream_chunks():
    adapter = FakeAdapter([
        ModelResponse(text="thinking", tool_calls=[ToolCall(name="lookup", args={"key": "a"})]),
        "done",
    ])
    worker = LLMWorker("w", provider=ModelProvider(adapter), registry=_lookup_registry())

    kinds = [chunk.type async for chunk in worker.stream("x")]

    assert kinds == ["text", "tool_call", "tool_result", "text", "done"]


@pytest.mark.asyncio
async def test_callable_worker_sync_and_async():
    async def async_fn(prompt, context=None, metadata=None):
        return WorkerResponse(text=prompt.upper(), metadata=metadata)

    sync_worker = CallableWorker("s", lambda prompt, **_: 42, description="numbers")
    async_worker = CallableWorker("a", async_fn)

    assert (await sync_worker.invoke("x")).text == "42"
    response = await async_worker.invoke("hi", metadata={"task_id": "t"})
    assert response.text == "HI"
    assert response.metadata == {"task_id": "t"}
    assert sync_worker.info.description == "numbers"
    assert sync_worker.name == "s"


@pytest.mark.asyncio
async def test_default_stream_wraps_invoke():
    worker = CallableWorker("s", lambda prompt, **_: "answer")
    chunks = [chunk async for chunk in worker.stream("q")]
    assert [c.type for c in chunks] == ["text", "done"]
    assert chunks[-1].response.text == "answer"


def test_cancellation_token():
    token = CancellationToken()
    assert not token.cancelled
    token.cancel("first")
    token.cancel("second")
    assert token.cancelled
    assert token.reason == "first"


def test_tool_defs_filtered_by_name():
    registry = _lookup_registry()
    assert [t.name for t in registry.get_all(["lookup"])] == ["lookup"]
    assert isinstance(registry.get_def("lookup"), ToolDef)
