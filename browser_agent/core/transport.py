"""
Model Transport — one chat-completions request over httpx.

The transport sends a fully formed request, decodes either a JSON body or
an SSE stream into one assembled message, and classifies failures:

- HTTP 408/409/429/500/502/503/504 are retryable, other statuses terminal.
- A retry-delay hint is read from ``Retry-After``, rate-limit reset headers
  or the error body; a hint above the caller's cap makes the failure
  terminal instead of waiting.

SSE decoding (``SseDecoder``) is pure: it only turns bytes into text deltas
and an assembled message.  Delta delivery to observers happens here, and an
observer that raises is logged and ignored.
"""

from __future__ import annotations

import codecs
import json
import logging
import re
import time
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Mapping, Optional

import httpx

from .errors import TransportError
from .models import ToolCall

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({408, 409, 429, 500, 502, 503, 504})

DeltaCallback = Callable[[str], None]


# ── Request / response ──────────────────────────────────────────────

@dataclass
class ModelRequest:
    """A fully formed endpoint call."""
    url: str
    payload: dict
    headers: dict = field(default_factory=dict)
    timeout_ms: int = 120_000
    max_retry_delay_ms: Optional[int] = None

    @property
    def stream(self) -> bool:
        return bool(self.payload.get("stream"))


@dataclass
class AssembledMessage:
    """Final model turn: text plus tool calls in index order."""
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    packet_count: int = 0
    status: int = 200

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0


# ── Delta assembly ──────────────────────────────────────────────────

def extract_delta_text(delta: Mapping[str, Any]) -> str:
    content = delta.get("content")
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    out = []
    for item in content:
        if not isinstance(item, dict):
            continue
        if isinstance(item.get("text"), str):
            out.append(item["text"])
        elif isinstance(item.get("content"), str):
            out.append(item["content"])
    return "".join(out)


class DeltaAssembler:
    """Merges per-index tool call fragments and concatenates text."""

    def __init__(self):
        self.text = ""
        self.packet_count = 0
        self._calls: dict[int, dict] = {}

    def add_packet(self, packet: Any) -> str:
        """Fold one decoded JSON packet in; returns the text it added."""
        self.packet_count += 1
        if not isinstance(packet, dict):
            return ""
        added = []
        for choice in packet.get("choices") or []:
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta") or choice.get("message") or {}
            if not isinstance(delta, dict):
                continue
            chunk = extract_delta_text(delta)
            if chunk:
                self.text += chunk
                added.append(chunk)
            self._merge_tool_calls(delta.get("tool_calls") or [])
        return "".join(added)

    def _merge_tool_calls(self, fragments: list) -> None:
        for fragment in fragments:
            if not isinstance(fragment, dict):
                continue
            index = fragment.get("index")
            if not isinstance(index, int) or isinstance(index, bool):
                index = 0
            slot = self._calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
            if isinstance(fragment.get("id"), str) and fragment["id"]:
                slot["id"] = fragment["id"]
            fn = fragment.get("function") or {}
            if isinstance(fn.get("name"), str) and fn["name"]:
                slot["name"] += fn["name"]
            if isinstance(fn.get("arguments"), str) and fn["arguments"]:
                slot["arguments"] += fn["arguments"]

    def result(self) -> AssembledMessage:
        calls = []
        for index in sorted(self._calls):
            slot = self._calls[index]
            if not slot["name"].strip():
                continue
            calls.append(ToolCall(
                id=slot["id"] or f"toolcall-{index + 1}",
                name=slot["name"].strip(),
                arguments_json=slot["arguments"],
            ))
        return AssembledMessage(content=self.text, tool_calls=calls, packet_count=self.packet_count)


class SseDecoder:
    """
    Incremental SSE decoder.

    ``feed`` accepts raw bytes in any chunking (multi-byte UTF-8 sequences
    may be split) and returns the text deltas completed by that chunk, in
    arrival order.  ``finish`` flushes the tail and returns the message.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._assembler = DeltaAssembler()
        self.done = False

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        deltas = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            delta = self._process_line(line.rstrip("\r"))
            if delta:
                deltas.append(delta)
        return deltas

    def finish(self) -> tuple[list[str], AssembledMessage]:
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        deltas = []
        if tail.strip():
            delta = self._process_line(tail.rstrip("\r"))
            if delta:
                deltas.append(delta)
        return deltas, self._assembler.result()

    def _process_line(self, raw_line: str) -> str:
        line = raw_line.strip()
        if not line.startswith("data:"):
            return ""
        data = line[5:].strip()
        if not data:
            return ""
        if data == "[DONE]":
            self.done = True
            return ""
        try:
            packet = json.loads(data)
        except json.JSONDecodeError:
            logger.debug(f"Skipping malformed SSE packet: {data[:120]}")
            return ""
        return self._assembler.add_packet(packet)


def parse_sse_body(body: str) -> AssembledMessage:
    decoder = SseDecoder()
    decoder.feed(body.encode("utf-8"))
    _, message = decoder.finish()
    return message


def parse_response_body(body: str, content_type: str = "") -> AssembledMessage:
    """Parse a buffered body: SSE when it looks like one, else JSON."""
    if "text/event-stream" in content_type.lower() or body.strip().startswith("data:"):
        return parse_sse_body(body)
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise TransportError(f"Invalid JSON from model endpoint: {e}", code="E_LLM_BAD_RESPONSE") from e
    choices = payload.get("choices") if isinstance(payload, dict) else None
    first = choices[0] if isinstance(choices, list) and choices else {}
    message = (first or {}).get("message") or {}
    calls = []
    for index, raw in enumerate(message.get("tool_calls") or []):
        if not isinstance(raw, dict):
            continue
        call = ToolCall.from_dict(raw)
        if call.name.strip():
            call.id = call.id or f"toolcall-{index + 1}"
            calls.append(call)
    return AssembledMessage(content=extract_delta_text(message), tool_calls=calls, packet_count=1)


# ── Retry-delay hints ───────────────────────────────────────────────

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(ms|s|m|h)", re.IGNORECASE)
_BODY_RETRY_DELAY_RE = re.compile(r'"retryDelay"\s*:\s*"(\d+(?:\.\d+)?)s"', re.IGNORECASE)
_BODY_RETRY_IN_RE = re.compile(
    r"retry\s+(?:in|after)\s+(\d+(?:\.\d+)?)\s*(ms|milliseconds?|s|secs?|seconds?)?\b",
    re.IGNORECASE,
)
_RATE_LIMIT_RESET_HEADERS = (
    "x-ratelimit-reset-requests",
    "x-ratelimit-reset-tokens",
    "x-ratelimit-reset",
    "ratelimit-reset",
)
_UNIT_MS = {"ms": 1, "s": 1000, "m": 60_000, "h": 3_600_000}


def _parse_duration_ms(value: str) -> Optional[int]:
    parts = _DURATION_RE.findall(value)
    if not parts:
        return None
    return int(sum(float(n) * _UNIT_MS[u.lower()] for n, u in parts))


def _parse_retry_after(value: str, now: float) -> Optional[int]:
    value = value.strip()
    if not value:
        return None
    try:
        return max(0, int(float(value) * 1000))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0, int((when.timestamp() - now) * 1000))


def _parse_reset_header(value: str, now: float) -> Optional[int]:
    value = value.strip()
    try:
        number = float(value)
    except ValueError:
        return _parse_duration_ms(value)
    # Epoch seconds vs. relative seconds
    if number > 1_000_000_000:
        return max(0, int((number - now) * 1000))
    return max(0, int(number * 1000))


def extract_retry_delay_hint(
    headers: Mapping[str, str],
    body: str = "",
    now: Optional[float] = None,
) -> Optional[int]:
    """Retry delay in ms from headers or body text, else ``None``."""
    now = time.time() if now is None else now
    lowered = {k.lower(): v for k, v in headers.items()}

    retry_after = lowered.get("retry-after")
    if retry_after:
        hint = _parse_retry_after(retry_after, now)
        if hint is not None:
            return hint

    for name in _RATE_LIMIT_RESET_HEADERS:
        if name in lowered:
            hint = _parse_reset_header(lowered[name], now)
            if hint is not None:
                return hint

    if body:
        match = _BODY_RETRY_DELAY_RE.search(body)
        if match:
            return int(float(match.group(1)) * 1000)
        match = _BODY_RETRY_IN_RE.search(body)
        if match:
            unit = (match.group(2) or "s").lower()
            factor = 1 if unit.startswith("m") else 1000
            return int(float(match.group(1)) * factor)
    return None


def is_retryable_status(status: Optional[int]) -> bool:
    return status in RETRYABLE_STATUSES


# ── Transport ───────────────────────────────────────────────────────

class ModelTransport:
    """
    Sends one request; never retries by itself.

    Pass a shared ``httpx.AsyncClient`` to reuse connections (and to inject
    ``httpx.MockTransport`` in tests); otherwise one client per call.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client

    async def send(
        self,
        request: ModelRequest,
        on_delta: Optional[DeltaCallback] = None,
    ) -> AssembledMessage:
        timeout = httpx.Timeout(request.timeout_ms / 1000)
        headers = {"content-type": "application/json", **request.headers}
        try:
            if self._client is not None:
                return await self._send_with(self._client, request, headers, timeout, on_delta)
            async with httpx.AsyncClient() as client:
                return await self._send_with(client, request, headers, timeout, on_delta)
        except httpx.TimeoutException as e:
            raise TransportError(
                f"LLM request timeout after {request.timeout_ms}ms",
                code="E_LLM_TIMEOUT",
                retryable=True,
            ) from e
        except httpx.TransportError as e:
            raise TransportError(
                f"LLM network error: {e}",
                code="E_LLM_NETWORK",
                retryable=True,
            ) from e

    async def _send_with(
        self,
        client: httpx.AsyncClient,
        request: ModelRequest,
        headers: dict,
        timeout: httpx.Timeout,
        on_delta: Optional[DeltaCallback],
    ) -> AssembledMessage:
        async with client.stream(
            "POST",
            request.url,
            json=request.payload,
            headers=headers,
            timeout=timeout,
        ) as response:
            content_type = response.headers.get("content-type", "")
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise self._http_error(response.status_code, response.headers, body, request)

            if "text/event-stream" in content_type.lower():
                decoder = SseDecoder()
                async for chunk in response.aiter_bytes():
                    self._emit(on_delta, decoder.feed(chunk))
                tail, message = decoder.finish()
                self._emit(on_delta, tail)
            else:
                body = (await response.aread()).decode("utf-8", errors="replace")
                message = parse_response_body(body, content_type)
                if message.content and on_delta is not None:
                    self._emit(on_delta, [message.content])

            message.status = response.status_code
            logger.debug(
                f"LLM response: {len(message.content)} chars, "
                f"{len(message.tool_calls)} tool call(s), {message.packet_count} packet(s)"
            )
            return message

    @staticmethod
    def _http_error(
        status: int,
        headers: Mapping[str, str],
        body: str,
        request: ModelRequest,
    ) -> TransportError:
        retryable = is_retryable_status(status)
        hint = extract_retry_delay_hint(headers, body) if retryable else None
        cap = request.max_retry_delay_ms
        hint_exceeded = hint is not None and cap is not None and hint > cap
        if hint_exceeded:
            logger.warning(f"LLM retry hint {hint}ms exceeds cap {cap}ms; not retrying")
            retryable = False
        return TransportError(
            f"LLM HTTP {status}",
            code="E_LLM_HTTP",
            status=status,
            retryable=retryable,
            retry_after_ms=hint,
            hint_exceeded=hint_exceeded,
            details={"body": body[:2000]},
        )

    @staticmethod
    def _emit(on_delta: Optional[DeltaCallback], deltas: list[str]) -> None:
        if on_delta is None:
            return
        for delta in deltas:
            try:
                on_delta(delta)
            except Exception:
                logger.exception("Stream delta observer raised; ignoring")
