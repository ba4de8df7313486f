"""Provider adapter layer — model-agnostic LLM interface."""

from conductor.providers.base import ModelProvider, ProviderAdapter
from conductor.providers.factory import create_provider

__all__ = ["ModelProvider", "ProviderAdapter", "create_provider"]
