"""Test tool registry."""

import pytest

from conductor.errors import ToolNotFoundError
from conductor.models import ToolCall, ToolDef
from conductor.tools.registry import ToolRegistry


def _registry():
    registry = ToolRegistry()

    @registry.tool(
        "echo",
        "Echo the input",
        {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
        guidance="Repeats text back.",
    )
    def echo(text, context=None):
        return f"echo: {text}"

    async def shout(text, context=None):
        return text.upper()

    registry.register(ToolDef(name="shout", description="Uppercase", parameters={"type": "object", "properties": {}}), shout)
    return registry


def test_registry_get_def():
    registry = _registry()
    echo_def = registry.get_def("echo")
    assert echo_def is not None
    assert echo_def.name == "echo"
    assert "text" in str(echo_def.parameters)
    assert echo_def.guidance == "Repeats text back."

    assert registry.get_def("nonexistent") is None


def test_get_all_and_names():
    registry = _registry()
    assert registry.names() == ["echo", "shout"]
    assert [t.name for t in registry.get_all(["shout", "missing"])] == ["shout"]
    assert len(registry.get_all()) == 2


def test_tool_parameters_valid():
    """All tools should have valid JSON Schema parameters."""
    for tool in _registry().get_all():
        assert tool.parameters.get("type") == "object"
        assert "properties" in tool.parameters


@pytest.mark.asyncio
async def test_call_sync_and_async():
    registry = _registry()
    assert await registry.call("echo", {"text": "hi"}) == "echo: hi"
    assert await registry.call("shout", {"text": "hi"}) == "HI"

    with pytest.raises(ToolNotFoundError):
        await registry.call("missing", {})


@pytest.mark.asyncio
async def test_dispatch_reports_errors_as_text():
    registry = _registry()
    assert await registry.dispatch(ToolCall(name="echo", args={"text": "x"}), None) == "echo: x"
    assert await registry.dispatch(ToolCall(name="nope", args={}), None) == "Error: Unknown tool 'nope'"

    result = await registry.dispatch(ToolCall(name="echo", args={}), None)
    assert result.startswith("Error executing echo:")
