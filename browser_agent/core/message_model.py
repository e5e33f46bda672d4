"""
Message Model — repair conversation history before it is sent to a model.

Externally supplied history (restored sessions, compaction output, failed
turns) can break the chat-completions pairing rules.  ``transform_messages_for_llm``
normalizes entries and then:

1. inserts a synthetic assistant tool call for every orphan tool result,
2. rewrites tool call ids that violate ``^[A-Za-z0-9_-]{1,64}$`` (and the
   matching tool result references),
3. appends ``No result provided`` results for calls left unanswered.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Optional, Union

from .models import Message, ToolCall


TOOL_CALL_ID_MAX = 64
TOOL_CALL_ID_VALID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")
MISSING_TOOL_RESULT = "No result provided"

COMPACTION_SUMMARY_PREFIX = (
    "The conversation history before this point was compacted into the "
    "following summary:\n\n<summary>\n"
)
COMPACTION_SUMMARY_SUFFIX = "\n</summary>"

SESSION_TITLE_MAX = 28
SESSION_TITLE_MIN = 2

_SKIPPED_STOP_REASONS = ("error", "aborted")
_TITLE_STRIP_RE = re.compile(r"[`*_>#\[\]()]")
_TITLE_LEAD_RE = re.compile(r"^(please\s+|can you\s+|could you\s+)", re.IGNORECASE)


# ── Tool call ids ───────────────────────────────────────────────────

def fnv1a_32(text: str) -> str:
    """32-bit FNV-1a over UTF-16 code units, as lowercase hex."""
    h = 2166136261
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = (h * 16777619) & 0xFFFFFFFF
    return format(h, "x")


def normalize_tool_call_id(raw_id: Any, fallback_seed: str = "") -> str:
    """
    Return a provider-safe tool call id.

    Valid ids pass through untouched.  Anything else is sanitized, and if
    that is still not valid, replaced by ``{prefix}_{hash}``; the result only
    depends on the input, so a raw id always maps to the same normalized id.
    """
    source = str(raw_id or "").strip()
    if TOOL_CALL_ID_VALID_RE.match(source):
        return source

    base = source or fallback_seed or "tool"
    sanitized = re.sub(r"[^a-zA-Z0-9_-]", "_", base)
    sanitized = re.sub(r"_+", "_", sanitized).strip("_")
    if TOOL_CALL_ID_VALID_RE.match(sanitized):
        return sanitized

    digest = fnv1a_32(base)
    compact = sanitized[: max(0, TOOL_CALL_ID_MAX - len(digest) - 2)]
    normalized = f"{compact or 'tool'}_{digest}"[:TOOL_CALL_ID_MAX]
    if TOOL_CALL_ID_VALID_RE.match(normalized):
        return normalized
    return f"tool_{digest}"[:TOOL_CALL_ID_MAX]


# ── Normalization ───────────────────────────────────────────────────

def normalize_text_content(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        parts = []
        for item in raw:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict):
                for key in ("text", "input_text", "content"):
                    if isinstance(item.get(key), str):
                        parts.append(item[key])
                        break
        return "".join(parts)
    if isinstance(raw, dict) and isinstance(raw.get("text"), str):
        return raw["text"]
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return str(raw)
    if isinstance(raw, bool):
        return "true" if raw else "false"
    return ""


def _as_dict(raw: Union[Message, dict]) -> dict:
    if isinstance(raw, Message):
        data = raw.to_dict()
        data["name"] = raw.name
        data["stop_reason"] = raw.stop_reason
        return data
    return raw if isinstance(raw, dict) else {}


def _normalize_incoming(raw: Union[Message, dict], index: int) -> Optional[Message]:
    row = _as_dict(raw)
    role = str(row.get("role") or "").strip().lower()
    content = normalize_text_content(row.get("content"))

    if role == "assistant":
        calls = []
        for i, item in enumerate(row.get("tool_calls") or row.get("toolCalls") or []):
            if not isinstance(item, dict):
                continue
            call = ToolCall.from_dict(item)
            if not call.name.strip():
                continue
            call.id = call.id or f"toolcall_{i + 1}"
            calls.append(call)
        stop_reason = str(row.get("stop_reason") or row.get("stopReason") or "").strip().lower()
        if not content and not calls:
            return None
        return Message(
            role="assistant",
            content=content,
            tool_calls=calls,
            stop_reason=stop_reason or None,
        )

    if role == "tool":
        tool_call_id = str(row.get("tool_call_id") or row.get("toolCallId") or "").strip()
        name = str(row.get("name") or row.get("toolName") or "").strip()
        if not tool_call_id:
            legacy = content.strip()
            if not legacy:
                return None
            return Message(role="user", content=f"Tool result ({name or 'unknown'}):\n{legacy}")
        return Message(role="tool", content=content, tool_call_id=tool_call_id, name=name or None)

    if role in ("system", "user"):
        if not content.strip():
            return None
        return Message(role=role, content=content)

    if not content.strip():
        return None
    return Message(role="system" if index == 0 else "assistant", content=content)


# ── Repair passes ───────────────────────────────────────────────────

def drop_failed_turns(messages: list[Message]) -> list[Message]:
    """Remove errored or aborted assistant turns together with the results of their calls."""
    out: list[Message] = []
    dropped: set[str] = set()

    for message in messages:
        if message.role == "assistant" and message.stop_reason in _SKIPPED_STOP_REASONS:
            dropped.update(call.id for call in message.tool_calls if call.id)
            continue
        if message.role == "tool" and (message.tool_call_id or "").strip() in dropped:
            continue
        out.append(message)

    return out


def insert_synthetic_assistant_for_orphans(messages: list[Message]) -> list[Message]:
    """Declare a tool call for every tool result that lacks one."""
    out: list[Message] = []
    declared: set[str] = set()

    for message in messages:
        if message.role == "assistant":
            declared.update(call.id for call in message.tool_calls)
            out.append(message)
            continue
        if message.role != "tool":
            out.append(message)
            continue
        tool_call_id = (message.tool_call_id or "").strip()
        if tool_call_id and tool_call_id not in declared:
            out.append(Message(
                role="assistant",
                content="",
                tool_calls=[ToolCall(
                    id=tool_call_id,
                    name=(message.name or "").strip() or "tool_result",
                    arguments_json="{}",
                )],
            ))
            declared.add(tool_call_id)
        out.append(message)

    return out


def _claim_id(raw_id: str, normalized: str, issued: dict[str, str]) -> str:
    # Two raw ids may sanitize to the same string; later ones get a hash suffix.
    candidate, salt = normalized, 0
    while candidate in issued and issued[candidate] != raw_id:
        seed = raw_id if salt == 0 else f"{raw_id}#{salt}"
        digest = fnv1a_32(seed)
        candidate = f"{normalized[: TOOL_CALL_ID_MAX - len(digest) - 1]}_{digest}"
        salt += 1
    issued[candidate] = raw_id
    return candidate


def patch_tool_call_ids(messages: list[Message]) -> list[Message]:
    """Rewrite invalid ids on calls and on the results that reference them."""
    mapping: dict[str, str] = {}
    issued: dict[str, str] = {}
    out: list[Message] = []

    for i, message in enumerate(messages):
        if message.role == "assistant":
            calls = []
            for j, call in enumerate(message.tool_calls):
                raw_id = call.id or f"toolcall_{i + 1}_{j + 1}"
                if raw_id not in mapping:
                    normalized = normalize_tool_call_id(raw_id, f"{call.name}_{i + 1}_{j + 1}")
                    mapping[raw_id] = _claim_id(raw_id, normalized, issued)
                calls.append(ToolCall(id=mapping[raw_id], name=call.name, arguments_json=call.arguments_json))
            out.append(Message(
                role="assistant",
                content=message.content,
                tool_calls=calls,
                stop_reason=message.stop_reason,
            ))
            continue
        if message.role == "tool":
            raw_id = (message.tool_call_id or "").strip()
            mapped = mapping.get(raw_id, raw_id)
            out.append(Message(
                role="tool",
                content=message.content,
                tool_call_id=normalize_tool_call_id(mapped, f"{message.name or 'tool'}_{i + 1}"),
                name=message.name,
            ))
            continue
        out.append(message)

    return out


def append_synthetic_missing_results(messages: list[Message]) -> list[Message]:
    """Answer every unanswered tool call before the next non-tool message."""
    result: list[Message] = []
    pending: list[ToolCall] = []
    answered: set[str] = set()

    def flush() -> None:
        for call in pending:
            if call.id in answered:
                continue
            result.append(Message(
                role="tool",
                content=MISSING_TOOL_RESULT,
                tool_call_id=call.id,
                name=call.name,
            ))

    for message in messages:
        if message.role == "tool":
            answered.add(message.tool_call_id or "")
            result.append(message)
            continue
        if pending:
            flush()
            pending, answered = [], set()
        if message.role == "assistant" and message.tool_calls:
            pending = list(message.tool_calls)
        result.append(message)

    return result


def _serialize(message: Message) -> dict:
    out = message.to_dict()
    if message.role == "tool" and message.name:
        out["name"] = message.name
    return out


def transform_messages_for_llm(raw_messages: Iterable[Union[Message, dict]]) -> list[dict]:
    """Normalize and repair history; returns chat-completions dicts."""
    normalized = []
    for index, raw in enumerate(raw_messages):
        message = _normalize_incoming(raw, index)
        if message is not None:
            normalized.append(message)

    repaired = drop_failed_turns(normalized)
    repaired = insert_synthetic_assistant_for_orphans(repaired)
    repaired = patch_tool_call_ids(repaired)
    repaired = append_synthetic_missing_results(repaired)
    return [_serialize(m) for m in repaired]


# ── Session helpers ─────────────────────────────────────────────────

def build_compaction_summary_message(previous_summary: str) -> Optional[dict]:
    summary = (previous_summary or "").strip()
    if not summary:
        return None
    return {
        "role": "user",
        "content": f"{COMPACTION_SUMMARY_PREFIX}{summary}{COMPACTION_SUMMARY_SUFFIX}",
    }


def normalize_session_title(value: Any, fallback: str = "") -> str:
    compact = _TITLE_STRIP_RE.sub(" ", str(value or ""))
    compact = re.sub(r"\s+", " ", compact).strip()
    if not compact:
        return fallback
    if len(compact) <= SESSION_TITLE_MAX:
        return compact
    return compact[:SESSION_TITLE_MAX] + "…"


def derive_session_title(messages: Iterable[Message]) -> str:
    """First usable line of the first user (else assistant) message."""
    messages = list(messages)
    first_user = next((m for m in messages if m.role == "user" and m.content.strip()), None)
    first_assistant = next((m for m in messages if m.role == "assistant" and m.content.strip()), None)

    for candidate in (first_user, first_assistant):
        if candidate is None:
            continue
        text = candidate.content
        line = next((ln for ln in text.split("\n") if ln.strip()), text)
        title = normalize_session_title(_TITLE_LEAD_RE.sub("", line.strip()))
        if len(title) >= SESSION_TITLE_MIN:
            return title
    return ""
