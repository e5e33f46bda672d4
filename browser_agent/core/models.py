"""
Universal data models for the execution engine.
Conversation messages use the chat-completions shape; providers convert
to/from their native format at the edge.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Literal, Optional
import json
import time
import uuid


Role = Literal["system", "user", "assistant", "tool"]


@dataclass
class ToolCall:
    """A single tool invocation requested by the model."""
    id: str
    name: str
    arguments_json: str = "{}"

    @staticmethod
    def generate_id() -> str:
        return f"call_{uuid.uuid4().hex[:12]}"

    def parsed_arguments(self) -> dict:
        """Decode ``arguments_json``; raises ``ValueError`` on bad JSON."""
        raw = (self.arguments_json or "").strip()
        if not raw:
            return {}
        value = json.loads(raw)
        if not isinstance(value, dict):
            raise ValueError("tool arguments must be a JSON object")
        return value

    def with_arguments(self, arguments: dict) -> "ToolCall":
        return ToolCall(id=self.id, name=self.name, arguments_json=json.dumps(arguments))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCall":
        fn = data.get("function") or {}
        arguments = fn.get("arguments", data.get("arguments", ""))
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(
            id=str(data.get("id") or ""),
            name=str(fn.get("name") or data.get("name") or ""),
            arguments_json=arguments,
        )


@dataclass
class Message:
    """A single message in the conversation history."""
    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None           # tool name on role=tool messages
    stop_reason: Optional[str] = None    # "error" / "aborted" on failed assistant turns
    timestamp: float = field(default_factory=time.time)

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    def to_dict(self) -> dict:
        """Chat-completions wire shape."""
        out: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            out["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.role == "tool":
            out["tool_call_id"] = self.tool_call_id or ""
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        raw_calls = data.get("tool_calls") or data.get("toolCalls") or []
        content = data.get("content", "")
        if isinstance(content, list):
            content = "".join(
                str(part.get("text", "")) if isinstance(part, dict) else str(part)
                for part in content
            )
        return cls(
            role=data.get("role", "user"),
            content=str(content or ""),
            tool_calls=[ToolCall.from_dict(tc) for tc in raw_calls if isinstance(tc, dict)],
            tool_call_id=data.get("tool_call_id") or data.get("toolCallId"),
            name=data.get("name") or data.get("toolName"),
            stop_reason=data.get("stop_reason") or data.get("stopReason"),
        )


@dataclass
class RetryState:
    """Per-session retry bookkeeping, mirrored to the UI via events."""
    active: bool = False
    attempt: int = 0
    max_attempts: int = 0
    delay_ms: int = 0

    def update(self, attempt: int, max_attempts: int, delay_ms: int) -> None:
        self.active = True
        self.attempt = attempt
        self.max_attempts = max_attempts
        self.delay_ms = delay_ms

    def reset(self) -> None:
        self.active = False
        self.attempt = 0
        self.delay_ms = 0

    def to_dict(self) -> dict:
        return {
            "active": self.active,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "delay_ms": self.delay_ms,
        }


@dataclass
class ExecutionResult:
    """Outcome of dispatching one plan. Read-only once returned."""
    ok: bool
    data: Any = None
    verified: bool = False
    verify_reason: Optional[str] = None
    error: str = ""
    error_code: Optional[str] = None
    error_details: Any = None
    retryable: bool = False
    error_reason: Optional[str] = None   # failed_execute / failed_verify
    mode_used: Optional[str] = None
    attempts: int = 1

    @classmethod
    def success(cls, data: Any = None, **kwargs: Any) -> "ExecutionResult":
        return cls(ok=True, data=data, **kwargs)

    @classmethod
    def failure(cls, error: str, error_code: Optional[str] = None, **kwargs: Any) -> "ExecutionResult":
        kwargs.setdefault("error_reason", "failed_execute")
        return cls(ok=False, error=error, error_code=error_code, **kwargs)

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"ok": self.ok}
        if self.ok:
            out["data"] = self.data
            out["verified"] = self.verified
            if self.verify_reason:
                out["verify_reason"] = self.verify_reason
        else:
            out["error"] = self.error
            out["error_code"] = self.error_code
            out["retryable"] = self.retryable
            if self.error_details is not None:
                out["details"] = self.error_details
        if self.attempts > 1:
            out["attempts"] = self.attempts
        return out


@dataclass
class ModeEscalation:
    """Suggestion to re-run an environment action in a different mode."""
    from_mode: str = "background"
    to_mode: str = "focus"
    reason: str = ""

    def to_dict(self) -> dict:
        return {"from": self.from_mode, "to": self.to_mode, "reason": self.reason}


@dataclass
class FailureEnvelope:
    """Structured failure handed back to the model as a tool result."""
    tool: str
    error: str
    error_code: Optional[str]
    error_reason: str
    action: str                 # auto_replay / llm_replan / fail_fast
    retryable: bool
    retry_hint: str
    resume_strategy: str
    mode_escalation: Optional[ModeEscalation] = None
    details: Any = None
    args: Optional[dict] = None
    raw_args: Optional[str] = None

    def to_dict(self) -> dict:
        out: dict[str, Any] = {
            "ok": False,
            "tool": self.tool,
            "error": self.error,
            "error_code": self.error_code,
            "error_reason": self.error_reason,
            "failure_class": self.action,
            "retryable": self.retryable,
            "retry_hint": self.retry_hint,
            "resume_strategy": self.resume_strategy,
        }
        if self.mode_escalation:
            out["mode_escalation"] = self.mode_escalation.to_dict()
        if self.details is not None:
            out["details"] = self.details
        if self.args is not None:
            out["args"] = self.args
        if self.raw_args is not None:
            out["raw_args"] = self.raw_args
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)
