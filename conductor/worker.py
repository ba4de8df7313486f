"""Worker agents — the capability the orchestrator delegates tasks to.

A worker takes a prompt plus a little recent context and answers with text,
the tool calls it made along the way and its token usage. `LLMWorker` runs a
ReAct loop against a model provider; `CallableWorker` adapts a plain function.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from conductor.config import DEFAULT_MAX_TOKENS, DEFAULT_MODEL, DEFAULT_TEMPERATURE, MAX_WORKER_ITERATIONS
from conductor.models import AgentInfo, CancellationToken, ModelResponse, TokenUsage, ToolCallRecord
from conductor.providers.base import ModelProvider
from conductor.providers.factory import create_provider
from conductor.tools.context import ToolContext
from conductor.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class WorkerResponse:
    text: str
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "usage": self.usage.to_dict(),
            "metadata": self.metadata,
        }


@dataclass
class WorkerChunk:
    """One step of a streamed worker invocation."""

    type: str  # text | tool_call | tool_result | done
    text: str = ""
    tool_call: ToolCallRecord | None = None
    response: WorkerResponse | None = None


class WorkerAgent(ABC):
    """A named agent that can be delegated work."""

    def __init__(self, id: str, name: str | None = None, description: str = ""):
        self.id = id
        self.name = name or id
        self.description = description

    @property
    def info(self) -> AgentInfo:
        return AgentInfo(id=self.id, name=self.name, description=self.description)

    @abstractmethod
    async def invoke(
        self,
        prompt: str,
        context: list[dict] | None = None,
        tools: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> WorkerResponse:
        """Answer `prompt`. `context` is recent conversation, oldest first."""

    async def stream(
        self,
        prompt: str,
        context: list[dict] | None = None,
        tools: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[WorkerChunk]:
        """Stream the answer. Workers without native streaming yield it in one piece."""
        response = await self.invoke(prompt, context, tools, metadata, cancel_token)
        for record in response.tool_calls:
            yield WorkerChunk(type="tool_result", tool_call=record)
        if response.text:
            yield WorkerChunk(type="text", text=response.text)
        yield WorkerChunk(type="done", response=response)


class LLMWorker(WorkerAgent):
    """Worker backed by a language model, with optional tools."""

    def __init__(
        self,
        id: str,
        name: str | None = None,
        description: str = "",
        system: str | None = None,
        model: str = DEFAULT_MODEL,
        provider: ModelProvider | None = None,
        registry: ToolRegistry | None = None,
        max_iterations: int = MAX_WORKER_ITERATIONS,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        super().__init__(id, name, description)
        self.system = system or f"You are {self.name}. {description}".strip()
        self.model = model
        self._provider = provider
        self.registry = registry
        self.max_iterations = max_iterations
        self.temperature = temperature
        self.max_tokens = max_tokens

    @property
    def provider(self) -> ModelProvider:
        # Created on first use so registering a worker never touches the network stack
        if self._provider is None:
            self._provider = create_provider(self.model)
        return self._provider

    async def invoke(
        self,
        prompt: str,
        context: list[dict] | None = None,
        tools: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> WorkerResponse:
        response: WorkerResponse | None = None
        async for chunk in self.stream(prompt, context, tools, metadata, cancel_token):
            if chunk.type == "done":
                response = chunk.response
        return response or WorkerResponse(text="")

    async def stream(
        self,
        prompt: str,
        context: list[dict] | None = None,
        tools: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[WorkerChunk]:
        metadata = metadata or {}
        conversation = [*(context or []), {"role": "user", "content": prompt}]
        tool_defs = self.registry.get_all(tools) if self.registry else []
        tool_context = ToolContext(space_id=metadata.get("space_id", ""), agent_id=self.id)

        records: list[ToolCallRecord] = []
        usage = TokenUsage()
        text = ""

        for _ in range(self.max_iterations):
            if cancel_token and cancel_token.cancelled:
                logger.info(f"[{self.name}] cancelled: {cancel_token.reason}")
                break

            result: ModelResponse = await self.provider.generate(
                messages=conversation,
                tools=tool_defs or None,
                system=self.system,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
            usage = usage + result.usage
            text = result.text or ""
            if text:
                logger.info(f"[{self.name}] {text[:200]}")
                yield WorkerChunk(type="text", text=text)

            conversation.append({
                "role": "assistant",
                "content": text,
                "tool_calls": [{"id": tc.id, "name": tc.name, "args": tc.args} for tc in result.tool_calls],
            })

            if not result.tool_calls:
                break

            for tc in result.tool_calls:
                yield WorkerChunk(type="tool_call", tool_call=ToolCallRecord(name=tc.name, args=tc.args, id=tc.id))
                output = await self.registry.dispatch(tc, tool_context) if self.registry else (
                    f"Error: Unknown tool '{tc.name}'"
                )
                record = ToolCallRecord(name=tc.name, args=tc.args, result=output, id=tc.id)
                records.append(record)
                yield WorkerChunk(type="tool_result", tool_call=record)
                conversation.append({"role": "tool", "tool_use_id": tc.id, "name": tc.name, "content": output})
        else:
            logger.warning(f"[{self.name}] hit max iterations ({self.max_iterations})")

        yield WorkerChunk(type="done", response=WorkerResponse(text=text, tool_calls=records, usage=usage))


WorkerFn = Callable[..., Awaitable[Any] | Any]


class CallableWorker(WorkerAgent):
    """Wrap a function `fn(prompt, context=..., metadata=...)` as a worker.

    The function may be sync or async and may return a string or a WorkerResponse.
    """

    def __init__(self, id: str, fn: WorkerFn, name: str | None = None, description: str = ""):
        super().__init__(id, name, description)
        self._fn = fn

    async def invoke(
        self,
        prompt: str,
        context: list[dict] | None = None,
        tools: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> WorkerResponse:
        result = self._fn(prompt, context=context or [], metadata=metadata or {})
        if hasattr(result, "__await__"):
            result = await result
        if isinstance(result, WorkerResponse):
            return result
        return WorkerResponse(text=str(result))
