"""Base provider adapter — abstract interface for all LLM providers."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from conductor.config import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE
from conductor.context import count_message_tokens
from conductor.errors import StructuredOutputError
from conductor.models import ModelResponse, ToolDef

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class ProviderAdapter(ABC):
    """Translates between canonical tool defs and provider-specific API formats."""

    model: str

    @abstractmethod
    def format_tools(self, tools: list[ToolDef]) -> Any:
        """Convert canonical tool defs to provider's API format."""

    def format_tool_prompt(self, tools: list[ToolDef]) -> str:
        """Tool guidance text appended to the system prompt."""
        lines = ["## Tool Usage Guide\n"]
        for t in tools:
            if t.guidance:
                lines.append(f"### {t.name}\n{t.guidance}\n")
        return "\n".join(lines)

    @abstractmethod
    async def generate(
        self,
        messages: list[dict],
        tools: list[ToolDef] | None = None,
        system: str | None = None,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> ModelResponse:
        """Call the model and return a unified ModelResponse."""

    def count_tokens(self, messages: list[dict]) -> int:
        """Estimate token count for messages."""
        return count_message_tokens(messages)


def extract_json(text: str) -> Any:
    """Parse JSON from a model reply, tolerating markdown code fences and leading prose."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:-1]) if lines[-1].startswith("```") else "\n".join(lines[1:])
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise
        return json.loads(text[start : end + 1])


class ModelProvider:
    """Unified interface — wraps a ProviderAdapter and handles tool prompt injection."""

    def __init__(self, adapter: ProviderAdapter):
        self.adapter = adapter

    @property
    def model(self) -> str:
        return self.adapter.model

    async def generate(
        self,
        messages: list[dict],
        tools: list[ToolDef] | None = None,
        system: str | None = None,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> ModelResponse:
        # Inject tool guidance into system prompt
        if tools and system:
            tool_prompt = self.adapter.format_tool_prompt(tools)
            system = system + "\n\n" + tool_prompt

        return await self.adapter.generate(
            messages=messages,
            tools=tools,
            system=system,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    async def generate_object(
        self,
        schema: type[SchemaT],
        prompt: str,
        system: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> SchemaT:
        """Ask for a JSON object matching `schema` and validate the reply."""
        instructions = (
            "Respond with ONLY a JSON object that matches this JSON schema, no additional text:\n"
            + json.dumps(schema.model_json_schema())
        )
        system = f"{system}\n\n{instructions}" if system else instructions

        response = await self.generate(
            messages=[{"role": "user", "content": prompt}],
            system=system,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        text = response.text or ""
        try:
            return schema.model_validate(extract_json(text))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Could not parse {schema.__name__} from model reply: {e}")
            raise StructuredOutputError(f"Invalid {schema.__name__} output: {e}", raw_text=text) from e

    def count_tokens(self, messages: list[dict]) -> int:
        return self.adapter.count_tokens(messages)
