"""Tool registry — registers, resolves, and dispatches tool calls."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from conductor.errors import ToolNotFoundError
from conductor.models import ToolCall, ToolDef

logger = logging.getLogger(__name__)

# Type for tool implementation functions
ToolImpl = Callable[..., Awaitable[Any] | Any]


class ToolRegistry:
    """Registry of tool definitions and their implementations."""

    def __init__(self):
        self._tools: dict[str, ToolDef] = {}
        self._impls: dict[str, ToolImpl] = {}

    def register(self, tool_def: ToolDef, impl: ToolImpl):
        """Register a tool definition with its implementation."""
        self._tools[tool_def.name] = tool_def
        self._impls[tool_def.name] = impl

    def tool(self, name: str, description: str, parameters: dict[str, Any] | None = None, guidance: str = ""):
        """Decorator form of `register`."""

        def decorator(fn: ToolImpl) -> ToolImpl:
            schema = parameters or {"type": "object", "properties": {}}
            self.register(ToolDef(name=name, description=description, parameters=schema, guidance=guidance), fn)
            return fn

        return decorator

    def get_def(self, name: str) -> ToolDef | None:
        return self._tools.get(name)

    def get_all(self, names: list[str] | None = None) -> list[ToolDef]:
        """All tool definitions, or only those named."""
        if names is None:
            return list(self._tools.values())
        return [self._tools[n] for n in names if n in self._tools]

    def has(self, name: str) -> bool:
        return name in self._impls

    async def call(self, name: str, args: dict[str, Any], context: Any = None) -> Any:
        """Run a tool and return its raw result. Errors propagate."""
        impl = self._impls.get(name)
        if not impl:
            raise ToolNotFoundError(name)
        result = impl(context=context, **args)
        # Handle both sync and async implementations
        if hasattr(result, "__await__"):
            result = await result
        return result

    async def dispatch(self, tool_call: ToolCall, context: Any) -> str:
        """Execute a model-issued tool call and return the result string, errors included."""
        if not self.has(tool_call.name):
            return f"Error: Unknown tool '{tool_call.name}'"

        try:
            return str(await self.call(tool_call.name, tool_call.args, context))
        except Exception as e:
            logger.error(f"Tool '{tool_call.name}' failed: {e}", exc_info=True)
            return f"Error executing {tool_call.name}: {e}"

    def names(self) -> list[str]:
        return list(self._tools.keys())
