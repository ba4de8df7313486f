"""Provider factory — create the right adapter based on model string."""

from __future__ import annotations

from conductor.providers.base import ModelProvider, ProviderAdapter

REASONING_PREFIXES = ("o1", "o3", "o4")


def parse_model_string(model: str) -> tuple[str, str]:
    """Parse 'provider/model-name' into (provider, model)."""
    if "/" in model:
        provider, model_name = model.split("/", 1)
        return provider.lower(), model_name
    # Infer provider from model name
    if model.startswith("claude"):
        return "anthropic", model
    if model.startswith("gpt") or model.startswith(REASONING_PREFIXES):
        return "openai", model
    # Default to anthropic
    return "anthropic", model


def create_adapter(model: str) -> ProviderAdapter:
    """Create a provider adapter for the given model string."""
    provider, model_name = parse_model_string(model)

    if provider == "anthropic":
        from conductor.providers.anthropic_provider import AnthropicAdapter
        return AnthropicAdapter(model=model_name)
    elif provider == "openai":
        from conductor.providers.openai_provider import OpenAIAdapter
        return OpenAIAdapter(model=model_name)
    else:
        raise ValueError(f"Unknown provider: {provider}. Use 'anthropic/model' or 'openai/model'.")


def create_provider(model: str) -> ModelProvider:
    """Create a ModelProvider wrapping the appropriate adapter."""
    adapter = create_adapter(model)
    return ModelProvider(adapter)
