"""LLM endpoint adapters."""

from .base import BaseLLMProvider, LlmProviderRegistry
from .openai_compatible import OpenAICompatibleProvider

__all__ = ["BaseLLMProvider", "LlmProviderRegistry", "OpenAICompatibleProvider"]
