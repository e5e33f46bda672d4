"""
OpenAI-compatible chat-completions adapter.

Works with any endpoint exposing ``POST {base}/chat/completions`` with
function tools (OpenAI, OpenRouter, vLLM, LiteLLM, Ollama's /v1 shim).
"""

from __future__ import annotations

from .base import BaseLLMProvider
from ..model_router import LlmRoute
from ..transport import ModelRequest

DEFAULT_TEMPERATURE = 0.2


class OpenAICompatibleProvider(BaseLLMProvider):
    provider_id = "openai_compatible"

    def __init__(self, temperature: float = DEFAULT_TEMPERATURE, extra_headers: dict | None = None):
        self.temperature = temperature
        self._extra_headers = dict(extra_headers or {})

    def resolve_endpoint(self, route: LlmRoute) -> str:
        return f"{route.base.rstrip('/')}/chat/completions"

    def build_request(
        self,
        route: LlmRoute,
        messages: list[dict],
        tools: list[dict],
        stream: bool = True,
    ) -> ModelRequest:
        payload = {
            "model": route.model,
            "messages": messages,
            "tools": tools,
            "tool_choice": "auto",
            "temperature": self.temperature,
            "stream": stream,
        }
        if not tools:
            payload.pop("tools")
            payload.pop("tool_choice")
        return ModelRequest(
            url=self.resolve_endpoint(route),
            payload=payload,
            headers={"authorization": f"Bearer {route.key}", **self._extra_headers},
            timeout_ms=route.timeout_ms,
            max_retry_delay_ms=route.max_retry_delay_ms,
        )
