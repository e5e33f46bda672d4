"""
Abstract base class for LLM endpoint adapters.
An adapter turns a route plus conversation into a ModelRequest; the
transport does the I/O.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Optional

from ..model_router import LlmRoute
from ..transport import ModelRequest


class BaseLLMProvider(ABC):
    """Abstract endpoint adapter."""

    provider_id: str = ""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(provider_id={self.provider_id!r})"

    @abstractmethod
    def resolve_endpoint(self, route: LlmRoute) -> str:
        """Absolute URL for a chat request on this route."""

    @abstractmethod
    def build_request(
        self,
        route: LlmRoute,
        messages: list[dict],
        tools: list[dict],
        stream: bool = True,
    ) -> ModelRequest:
        """Fully formed request for the transport."""


class LlmProviderRegistry:
    """
    Explicit registry of endpoint adapters, owned by the orchestrator.

    Usage:
        registry = LlmProviderRegistry()
        registry.register(OpenAICompatibleProvider())
        provider = registry.get(route.provider)
    """

    def __init__(self):
        self._providers: dict[str, BaseLLMProvider] = {}

    def register(self, provider: BaseLLMProvider, replace: bool = False) -> None:
        provider_id = (provider.provider_id or "").strip()
        if not provider_id:
            raise ValueError("LLM provider id must not be empty")
        if provider_id in self._providers and not replace:
            raise ValueError(f"LLM provider already registered: {provider_id}")
        self._providers[provider_id] = provider

    def unregister(self, provider_id: str) -> bool:
        return self._providers.pop(provider_id, None) is not None

    def has(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def get(self, provider_id: str) -> Optional[BaseLLMProvider]:
        return self._providers.get(provider_id)

    def list(self) -> list[str]:
        return sorted(self._providers)
