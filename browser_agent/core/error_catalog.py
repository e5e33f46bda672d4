"""
Error Catalog — failure classification, retry hints and resume strategy.

Every tool failure is keyed by its normalized error code (``E_BUSY`` →
``BUSY``) and mapped to one of three actions:

- ``auto_replay``  — the dispatcher replays the call itself, invisibly.
- ``llm_replan``   — the failure is surfaced so the model can adapt.
- ``fail_fast``    — surfaced and not retried.

The catalog also decides when a failure on the live environment looks like
a focus problem (background tab, missing user gesture, held lease) and
derives the resume strategy the next attempt should follow.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .models import FailureEnvelope, ModeEscalation


# ── Actions & strategies ────────────────────────────────────────────

class FailureAction(Enum):
    AUTO_REPLAY = "auto_replay"
    LLM_REPLAN = "llm_replan"
    FAIL_FAST = "fail_fast"


class ResumeStrategy(Enum):
    RETRY_SAME_ARGS = "retry_same_args"
    RETRY_WITH_FRESH_SNAPSHOT = "retry_with_fresh_snapshot"
    REPLAN = "replan"


class FailureReason:
    FAILED_EXECUTE = "failed_execute"
    FAILED_VERIFY = "failed_verify"
    INVALID_ARGS = "invalid_args"
    PROGRESS_UNCERTAIN = "progress_uncertain"
    BLOCKED = "blocked"


@dataclass
class FailureClassification:
    action: FailureAction
    retryable: bool
    retry_hint: str

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "retryable": self.retryable,
            "retry_hint": self.retry_hint,
        }


# ── Static table ────────────────────────────────────────────────────

_DEFAULT_HINT = "Retry only when the failure is transient."

_CATALOG: Dict[str, dict] = {
    "BUSY": {
        "action": FailureAction.AUTO_REPLAY,
        "hint": "Bridge is busy, retry after a short delay.",
    },
    "BRIDGE_DISCONNECTED": {
        "action": FailureAction.AUTO_REPLAY,
        "hint": "Bridge connection was unstable; retry this tool call.",
    },
    "TIMEOUT": {
        "action": FailureAction.LLM_REPLAN,
        "hint": "The call timed out; retry with a larger timeout.",
    },
    "CLIENT_TIMEOUT": {
        # Side-effect aware, see ErrorCatalog.classify
        "action": FailureAction.LLM_REPLAN,
        "hint": "Bridge connection was unstable; retry this tool call.",
    },
    "NO_TAB": {
        "action": FailureAction.LLM_REPLAN,
        "hint": "Call get_all_tabs and retry with a valid tabId.",
    },
    "REF_REQUIRED": {
        "action": FailureAction.LLM_REPLAN,
        "hint": "Call search_elements for a fresh uid/ref and retry.",
    },
    "VERIFY_FAILED": {
        "action": FailureAction.LLM_REPLAN,
        "hint": "Re-observe the page, then adjust the action or its expect and retry.",
    },
}

# Tools that never change the environment; replaying them verbatim is safe.
READ_ONLY_TOOLS = frozenset({
    "read_file",
    "search_elements",
    "get_element_value",
    "get_all_tabs",
    "get_current_tab",
    "capture_screenshot",
    "browser_verify",
})

# Tools that act on the live browser environment.
ENVIRONMENT_TOOLS = frozenset({
    "search_elements",
    "click",
    "fill_element_by_uid",
    "select_option_by_uid",
    "hover_element_by_uid",
    "get_element_value",
    "press_key",
    "scroll_page",
    "navigate_tab",
    "fill_form",
    "computer",
    "capture_screenshot",
    "browser_verify",
})

_FOCUS_TIMEOUT_CODES = frozenset({"CDP_TIMEOUT", "ACTION_TIMEOUT"})
_FOCUS_TEXT_RE = re.compile(r"foreground|background|gesture|lease", re.IGNORECASE)


def normalize_error_code(code: Any) -> str:
    """``"e_busy"`` → ``"BUSY"``; empty input → ``""``."""
    text = str(code or "").strip().upper()
    if text.startswith("E_"):
        text = text[2:]
    return text


def is_read_only_tool(tool_name: str) -> bool:
    return tool_name in READ_ONLY_TOOLS


# ── ErrorCatalog — main API ─────────────────────────────────────────

class ErrorCatalog:
    """Static catalog turning (tool, error code) into recovery decisions."""

    @staticmethod
    def classify(tool_name: str, error_code: Any) -> FailureClassification:
        code = normalize_error_code(error_code)
        entry = _CATALOG.get(code)
        if entry is None:
            return FailureClassification(
                action=FailureAction.FAIL_FAST,
                retryable=False,
                retry_hint=_DEFAULT_HINT,
            )

        action = entry["action"]
        if code == "CLIENT_TIMEOUT" and is_read_only_tool(tool_name):
            action = FailureAction.AUTO_REPLAY

        return FailureClassification(
            action=action,
            retryable=True,
            retry_hint=ErrorCatalog.retry_hint(tool_name, code),
        )

    @staticmethod
    def retry_hint(tool_name: str, error_code: Any) -> str:
        code = normalize_error_code(error_code)
        if tool_name == "bash" and code == "TIMEOUT":
            return "Increase bash timeoutMs and retry the same command."
        if code == "CLIENT_TIMEOUT" and not is_read_only_tool(tool_name):
            return "The call may have partially applied; re-observe state before retrying."
        entry = _CATALOG.get(code)
        return entry["hint"] if entry else _DEFAULT_HINT

    @staticmethod
    def suggest_mode_escalation(
        tool_name: str,
        error_code: Any,
        text: str = "",
    ) -> Optional[ModeEscalation]:
        """Return a background → focus suggestion on focus-loss symptoms."""
        if tool_name not in ENVIRONMENT_TOOLS:
            return None
        code = normalize_error_code(error_code)
        if code == "VERIFY_FAILED":
            return ModeEscalation(reason="verify_failed")
        if code in _FOCUS_TIMEOUT_CODES:
            return ModeEscalation(reason="action_timeout")
        if text and _FOCUS_TEXT_RE.search(text):
            return ModeEscalation(reason="focus_signal")
        return None

    @staticmethod
    def resume_strategy(
        error_reason: str,
        classification: FailureClassification,
        mode_escalation: Optional[ModeEscalation] = None,
    ) -> ResumeStrategy:
        if error_reason == FailureReason.PROGRESS_UNCERTAIN:
            return ResumeStrategy.RETRY_WITH_FRESH_SNAPSHOT
        if mode_escalation is not None:
            return ResumeStrategy.RETRY_SAME_ARGS
        if classification.action is FailureAction.AUTO_REPLAY:
            return ResumeStrategy.RETRY_SAME_ARGS
        if classification.action is FailureAction.LLM_REPLAN and classification.retryable:
            return ResumeStrategy.RETRY_WITH_FRESH_SNAPSHOT
        return ResumeStrategy.REPLAN

    @staticmethod
    def build_failure_envelope(
        tool_name: str,
        error: str,
        error_code: Optional[str],
        error_reason: str = FailureReason.FAILED_EXECUTE,
        details: Any = None,
        args: Optional[dict] = None,
        raw_args: Optional[str] = None,
        retry_hint: str = "",
        resume_strategy: Optional[str] = None,
        signal_text: str = "",
    ) -> FailureEnvelope:
        """Classify a failure and wrap it for the model."""
        classification = ErrorCatalog.classify(tool_name, error_code)
        escalation = ErrorCatalog.suggest_mode_escalation(
            tool_name, error_code, signal_text or error,
        )
        strategy = resume_strategy or ErrorCatalog.resume_strategy(
            error_reason, classification, escalation,
        ).value
        return FailureEnvelope(
            tool=tool_name,
            error=error,
            error_code=error_code,
            error_reason=error_reason,
            action=classification.action.value,
            retryable=classification.retryable,
            retry_hint=retry_hint or classification.retry_hint,
            resume_strategy=strategy,
            mode_escalation=escalation,
            details=details,
            args=args,
            raw_args=raw_args,
        )
