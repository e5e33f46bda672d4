"""
Exception hierarchy for the execution engine.

Every raised error carries a machine-readable ``code`` (``E_*``), a message,
optional ``details`` and a ``retryable`` flag the retry and recovery layers
inspect.  The classification table that turns codes into replay decisions
lives in ``error_catalog``.
"""

from __future__ import annotations

from typing import Any, Optional


class AgentError(Exception):
    """Base class for all engine errors."""

    default_code = "E_INTERNAL"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Any = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details
        self.retryable = retryable

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class TransportError(AgentError):
    """Model endpoint call failed (network, timeout or HTTP status)."""

    default_code = "E_LLM_TRANSPORT"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status: Optional[int] = None,
        retryable: bool = False,
        retry_after_ms: Optional[int] = None,
        attempts: int = 1,
        hint_exceeded: bool = False,
        details: Any = None,
    ):
        super().__init__(message, code=code, details=details, retryable=retryable)
        self.status = status
        self.retry_after_ms = retry_after_ms
        self.attempts = attempts
        # Provider asked for a longer wait than the configured cap
        self.hint_exceeded = hint_exceeded


class LlmTerminalError(AgentError):
    """Retry budget exhausted or a non-retryable model failure."""

    default_code = "E_LLM_FAILED"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status: Optional[int] = None,
        attempts: int = 0,
        signature: str = "",
        repeated_failure: bool = False,
        details: Any = None,
    ):
        super().__init__(message, code=code, details=details, retryable=False)
        self.status = status
        self.attempts = attempts
        self.signature = signature
        self.repeated_failure = repeated_failure


class PlanError(AgentError):
    """A tool call could not be turned into an execution plan."""

    default_code = "E_ARGS"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        retryable: bool = False,
        resume_strategy: Optional[str] = None,
        retry_hint: str = "",
        supported_tools: Optional[list[str]] = None,
        details: Any = None,
    ):
        super().__init__(message, code=code, details=details, retryable=retryable)
        self.resume_strategy = resume_strategy
        self.retry_hint = retry_hint
        self.supported_tools = supported_tools or []


class ExecutionError(AgentError):
    """A capability provider failed while executing a plan."""

    default_code = "E_EXECUTE"


class HookContractError(AgentError):
    """An extension hook returned a malformed decision."""

    default_code = "E_HOOK_CONTRACT"


class LeaseError(AgentError):
    """A target lease could not be acquired."""

    default_code = "E_LEASE_HELD"

    def __init__(self, message: str, target_id: str = "", holder: str = ""):
        super().__init__(
            message,
            details={"target_id": target_id, "holder": holder},
            retryable=True,
        )
        self.target_id = target_id
        self.holder = holder


class RouteResolutionError(AgentError):
    """No usable LLM route for the requested profile."""

    default_code = "E_ROUTE"

    def __init__(self, message: str, reason: str, profile: str = "", role: str = ""):
        super().__init__(message, details={"reason": reason, "profile": profile, "role": role})
        self.reason = reason
        self.profile = profile
        self.role = role


class RunCancelled(AgentError):
    """Cooperative stop observed at a loop check point."""

    default_code = "E_CANCELLED"
