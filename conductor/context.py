"""Context budget — keeps conversation history inside a model's context window.

Token counts are estimates (four characters per token) measured on the JSON
form of each message. Compression works in two stages: summarize the older
part of a long conversation, then drop the oldest messages until it fits.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass

from conductor.config import (
    CONTEXT_OVERHEAD_TOKENS,
    DEFAULT_COMPLETION_TOKENS,
    DEFAULT_CONTEXT_LIMIT,
    MODEL_CONTEXT_LIMITS,
)

logger = logging.getLogger(__name__)

# Conversations longer than this get a summary before truncation is tried
SUMMARIZE_AFTER = 10
KEEP_AFTER_SUMMARY = 8
SUMMARY_POINTS = 5
SUMMARY_POINT_CHARS = 100
VALIDATION_RATIO = 0.95


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def message_tokens(message: dict) -> int:
    return estimate_tokens(json.dumps(message, separators=(",", ":"), ensure_ascii=False, default=str))


def count_message_tokens(messages: list[dict]) -> int:
    return sum(message_tokens(m) for m in messages)


@dataclass(frozen=True)
class ContextBudget:
    total_limit: int
    system_prompt: int
    tools: int
    completion: int
    overhead: int
    available_for_messages: int

    def to_dict(self) -> dict:
        return {
            "total_limit": self.total_limit,
            "system_prompt": self.system_prompt,
            "tools": self.tools,
            "completion": self.completion,
            "overhead": self.overhead,
            "available_for_messages": self.available_for_messages,
        }


@dataclass(frozen=True)
class ContextValidation:
    valid: bool
    total_tokens: int
    reason: str | None = None


def calculate_context_budget(
    total_limit: int,
    system_prompt: str,
    tools_text: str = "",
    completion_tokens: int = DEFAULT_COMPLETION_TOKENS,
    overhead: int = CONTEXT_OVERHEAD_TOKENS,
) -> ContextBudget:
    system_tokens = estimate_tokens(system_prompt)
    tool_tokens = estimate_tokens(tools_text)
    return ContextBudget(
        total_limit=total_limit,
        system_prompt=system_tokens,
        tools=tool_tokens,
        completion=completion_tokens,
        overhead=overhead,
        available_for_messages=total_limit - system_tokens - tool_tokens - completion_tokens - overhead,
    )


def model_limits(model: str) -> tuple[int, int]:
    """(total limit, completion reserve) for a model string like 'openai/o3-mini'."""
    name = model.split("/", 1)[-1].lower()
    best: str | None = None
    for prefix in MODEL_CONTEXT_LIMITS:
        if name.startswith(prefix) and (best is None or len(prefix) > len(best)):
            best = prefix
    if best is None:
        return DEFAULT_CONTEXT_LIMIT
    return MODEL_CONTEXT_LIMITS[best]


def budget_for_model(model: str, system_prompt: str, tools_text: str = "") -> ContextBudget:
    total, completion = model_limits(model)
    return calculate_context_budget(total, system_prompt, tools_text, completion_tokens=completion)


def summarize_messages(messages: list[dict]) -> str:
    """Cheap extractive summary: the opening of each of the first few user messages."""
    points = [
        m["content"][:SUMMARY_POINT_CHARS] + "..."
        for m in messages
        if m.get("role") == "user" and isinstance(m.get("content"), str)
    ]
    return "; ".join(points[:SUMMARY_POINTS])


def compress_messages(messages: list[dict], budget: ContextBudget) -> list[dict]:
    """Return `messages` trimmed to fit `budget.available_for_messages`.

    The input list is never modified.
    """
    total = count_message_tokens(messages)
    if total <= budget.available_for_messages:
        return messages

    logger.info(f"Compressing messages: {total} tokens > {budget.available_for_messages} budget")

    if len(messages) > SUMMARIZE_AFTER:
        summary = summarize_messages(messages[:-KEEP_AFTER_SUMMARY])
        if summary:
            compressed = [
                {"role": "system", "content": f"[Previous conversation summary: {summary}]"},
                *messages[-KEEP_AFTER_SUMMARY:],
            ]
            if count_message_tokens(compressed) <= budget.available_for_messages:
                logger.info(f"Summarized: {len(messages)} -> {len(compressed)} messages")
                return compressed

    truncated = list(messages)
    while total > budget.available_for_messages and len(truncated) > 1:
        # A leading system message is kept
        index = 1 if truncated[0].get("role") == "system" else 0
        removed = truncated.pop(index)
        total -= message_tokens(removed)

    logger.info(f"Truncated: {len(messages)} -> {len(truncated)} messages")
    return truncated


def validate_context(messages: list[dict], budget: ContextBudget) -> ContextValidation:
    total = budget.system_prompt + count_message_tokens(messages) + budget.tools + budget.completion
    if total > budget.total_limit * VALIDATION_RATIO:
        return ContextValidation(
            valid=False,
            total_tokens=total,
            reason=f"Token count ({total}) exceeds {int(VALIDATION_RATIO * 100)}% of limit ({budget.total_limit})",
        )
    return ContextValidation(valid=True, total_tokens=total)


def recent_window(messages: list[dict], size: int) -> list[dict]:
    """The last `size` messages, the fixed trimming applied before worker calls."""
    if size <= 0:
        return []
    return list(messages[-size:])
