"""Anthropic (Claude) provider adapter."""

from __future__ import annotations

import logging
from typing import Any

import anthropic

from conductor.config import ANTHROPIC_API_KEY, DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE
from conductor.models import ModelResponse, ToolCall, ToolDef, TokenUsage
from conductor.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)


class AnthropicAdapter(ProviderAdapter):
    def __init__(self, model: str = "claude-sonnet-4-5", client: Any = None):
        self.model = model
        self.client = client or anthropic.AsyncAnthropic(api_key=ANTHROPIC_API_KEY)

    def format_tools(self, tools: list[ToolDef]) -> list[dict]:
        return [
            {
                "name": t.name,
                "description": t.description,
                "input_schema": t.parameters,
            }
            for t in tools
        ]

    async def generate(
        self,
        messages: list[dict],
        tools: list[ToolDef] | None = None,
        system: str | None = None,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> ModelResponse:
        system_parts = [system] if system else []
        # Summaries produced by context compression arrive as system messages
        system_parts.extend(str(m.get("content", "")) for m in messages if m.get("role") == "system")

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": self._format_messages(messages),
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)
        if tools:
            kwargs["tools"] = self.format_tools(tools)

        try:
            raw = await self.client.messages.create(**kwargs)
        except anthropic.APIError as e:
            logger.error(f"Anthropic API error: {e}")
            raise

        return self._parse_response(raw)

    def _format_messages(self, messages: list[dict]) -> list[dict]:
        """Convert conversation turns to Anthropic's alternating user/assistant format.

        Consecutive turns with the same role are merged into one block list,
        which is how parallel tool results must be sent back. A windowed
        history that starts on an assistant turn gets a placeholder user turn.
        """
        formatted: list[dict] = []
        for msg in messages:
            role = msg.get("role", "user")
            if role == "system":
                continue  # sent via the system parameter
            if role == "tool":
                turn_role, blocks = "user", [{
                    "type": "tool_result",
                    "tool_use_id": msg.get("tool_use_id", msg.get("id", "unknown")),
                    "content": str(msg.get("content", "")),
                }]
            elif role == "assistant":
                turn_role, blocks = "assistant", _text_blocks(msg.get("content"))
                blocks += [
                    {"type": "tool_use", "id": tc.get("id", "unknown"), "name": tc.get("name", ""),
                     "input": tc.get("args", {})}
                    for tc in msg.get("tool_calls", [])
                ]
            else:
                turn_role, blocks = "user", _text_blocks(msg.get("content"))
            if not blocks:
                continue

            if formatted and formatted[-1]["role"] == turn_role:
                previous = formatted[-1]
                if isinstance(previous["content"], str):
                    previous["content"] = _text_blocks(previous["content"])
                previous["content"].extend(blocks)
            elif len(blocks) == 1 and blocks[0]["type"] == "text":
                formatted.append({"role": turn_role, "content": blocks[0]["text"]})
            else:
                formatted.append({"role": turn_role, "content": blocks})

        if formatted and formatted[0]["role"] == "assistant":
            logger.debug("History starts with an assistant turn; adding a placeholder user turn")
            formatted.insert(0, {"role": "user", "content": "(earlier conversation omitted)"})
        return formatted

    def _parse_response(self, raw: Any) -> ModelResponse:
        tool_calls = []
        text_parts = []
        for block in raw.content:
            if block.type == "tool_use":
                tool_calls.append(ToolCall(name=block.name, args=block.input, id=block.id))
            elif block.type == "text":
                text_parts.append(block.text)

        if getattr(raw, "stop_reason", None) == "max_tokens":
            logger.warning(f"{self.model} reply was cut off at max_tokens")

        return ModelResponse(
            text="\n".join(text_parts) if text_parts else None,
            tool_calls=tool_calls,
            usage=TokenUsage(raw.usage.input_tokens, raw.usage.output_tokens),
            raw=raw,
        )


def _text_blocks(content: Any) -> list[dict]:
    """Text blocks for a message body: a plain string or a list of parts."""
    if content is None or content == "":
        return []
    if isinstance(content, list):
        blocks = []
        for part in content:
            if isinstance(part, dict) and part.get("type", "text") == "text":
                blocks.append({"type": "text", "text": str(part.get("text", ""))})
            elif isinstance(part, str):
                blocks.append({"type": "text", "text": part})
        return blocks
    return [{"type": "text", "text": str(content)}]
