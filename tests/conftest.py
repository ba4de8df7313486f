"""Shared fakes: a scripted model adapter and simple workers."""

import json

from conductor.models import ModelResponse, ToolDef
from conductor.providers.base import ModelProvider, ProviderAdapter
from conductor.worker import CallableWorker


class FakeAdapter(ProviderAdapter):
    """Replies from a script, one entry per call.

    An entry may be a string, a dict (sent as JSON), a ModelResponse or an
    exception instance to raise. Every call's keyword arguments are recorded.
    """

    def __init__(self, replies=None, model="fake-model"):
        self.model = model
        self.replies = list(replies or [])
        self.calls = []

    def format_tools(self, tools: list[ToolDef]):
        return [t.name for t in tools]

    async def generate(self, messages, tools=None, system=None, temperature=0.7, max_tokens=4096):
        self.calls.append({"messages": list(messages), "tools": tools, "system": system})
        if not self.replies:
            raise AssertionError("FakeAdapter ran out of scripted replies")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, ModelResponse):
            return reply
        if isinstance(reply, dict):
            reply = json.dumps(reply)
        return ModelResponse(text=reply)


def fake_provider(*replies) -> ModelProvider:
    return ModelProvider(FakeAdapter(replies))


def echo_worker(agent_id: str, name: str | None = None, prefix: str = "") -> CallableWorker:
    return CallableWorker(agent_id, lambda prompt, **_: f"{prefix}{prompt}", name=name or agent_id)
