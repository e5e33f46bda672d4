"""
HTTP Bridge — forwards bridge frames to a remote bridge service.

Request:   POST {base_url}/invoke  {"id", "type": "invoke", "tool", "args", "sessionId"}
Response:  {"ok": true, "data": {...}}  or  {"ok": false, "error": {"code", "message", "details"}}

Transport failures map onto the codes the failure classifier knows:
connection refused/reset → ``E_BRIDGE_DISCONNECTED``, client-side timeout →
``E_CLIENT_TIMEOUT``, HTTP 429/503 → ``E_BUSY``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

import httpx

from ..core.capabilities import MODE_BRIDGE, CapabilityProvider, StepInput
from ..core.errors import AgentError
from .local_bridge import FRAME_TOOLS

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 130.0


class HttpBridgeClient:
    """
    Usage:
        client = HttpBridgeClient("http://127.0.0.1:8787", token="...")
        orch.register_providers(client.providers())
    """

    def __init__(self, base_url: str, token: str = "", timeout: float = DEFAULT_TIMEOUT_S,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client = client

    def providers(self) -> list["HttpBridgeProvider"]:
        return [HttpBridgeProvider(self, capability) for capability in FRAME_TOOLS]

    async def invoke_frame(self, frame: dict, session_id: str = "") -> Any:
        body = {
            "id": uuid.uuid4().hex,
            "type": "invoke",
            "tool": frame.get("tool"),
            "args": frame.get("args") or {},
            "sessionId": session_id,
        }
        headers = {"authorization": f"Bearer {self.token}"} if self.token else {}
        url = f"{self.base_url}/invoke"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise AgentError(f"Bridge call timed out: {frame.get('tool')}", code="E_CLIENT_TIMEOUT",
                             retryable=True) from e
        except httpx.TransportError as e:
            raise AgentError(f"Bridge unreachable at {self.base_url}: {e}", code="E_BRIDGE_DISCONNECTED",
                             retryable=True) from e

        if response.status_code in (429, 503):
            raise AgentError(f"Bridge busy (HTTP {response.status_code})", code="E_BUSY", retryable=True)
        try:
            payload = response.json()
        except ValueError as e:
            raise AgentError(f"Bridge returned non-JSON (HTTP {response.status_code})", code="E_BRIDGE_PROTOCOL",
                             details={"body": response.text[:500]}) from e

        if not isinstance(payload, dict):
            raise AgentError("Bridge response must be an object", code="E_BRIDGE_PROTOCOL")
        if payload.get("ok") is True:
            return payload.get("data")
        error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
        code = str(error.get("code") or f"E_HTTP_{response.status_code}")
        logger.debug(f"Bridge {frame.get('tool')} failed: {code}")
        raise AgentError(
            str(error.get("message") or "bridge call failed"),
            code=code,
            details=error.get("details"),
            retryable=bool(error.get("retryable", False)),
        )


class HttpBridgeProvider(CapabilityProvider):

    mode = MODE_BRIDGE

    def __init__(self, client: HttpBridgeClient, capability: str):
        if capability not in FRAME_TOOLS:
            raise ValueError(f"HTTP bridge does not serve {capability}")
        self.client = client
        self.capability = capability
        self.id = f"http-bridge:{capability}"

    async def invoke(self, step: StepInput) -> Any:
        frame = step.args.get("frame") if isinstance(step.args.get("frame"), dict) else {}
        return await self.client.invoke_frame(frame, step.session_id)
