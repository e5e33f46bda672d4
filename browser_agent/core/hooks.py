"""
Hook Runner — ordered extension points around tool calls and LLM requests.

Handlers run by descending priority, then registration order.  Each may
return nothing / ``{"action": "continue"}``, a patch merged into the
payload, or a block that stops the chain.  A handler that raises is
recorded in ``errors`` and the chain continues; a handler that returns a
malformed decision raises ``HookContractError``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .errors import HookContractError

logger = logging.getLogger(__name__)

HOOK_TOOL_BEFORE_CALL = "tool.before_call"
HOOK_TOOL_AFTER_RESULT = "tool.after_result"
HOOK_LLM_BEFORE_REQUEST = "llm.before_request"

HookHandler = Callable[[dict], Any]


@dataclass
class _Registration:
    id: str
    priority: int
    seq: int
    handler: HookHandler


@dataclass
class HookError:
    hook: str
    hook_id: str
    message: str


@dataclass
class HookRunResult:
    value: dict
    blocked: bool = False
    reason: str = ""
    patch_count: int = 0
    errors: list[HookError] = field(default_factory=list)


class HookRunner:
    """
    Usage:
        hooks = HookRunner()
        off = hooks.on("tool.before_call", lambda p: {"action": "block", "reason": "read-only"})
        result = await hooks.run("tool.before_call", {"tool": "bash", "arguments": {...}})
        off()
    """

    def __init__(self):
        self._handlers: dict[str, list[_Registration]] = {}
        self._sequence = 0

    def on(self, hook: str, handler: HookHandler, id: Optional[str] = None, priority: int = 0) -> Callable[[], bool]:
        hook_id = (id or "").strip() or f"{hook}#{self._sequence + 1}"
        registrations = self._handlers.setdefault(hook, [])
        registrations.append(_Registration(hook_id, int(priority), self._sequence, handler))
        self._sequence += 1
        registrations.sort(key=lambda r: (-r.priority, r.seq))
        return lambda: self.off(hook, hook_id)

    def off(self, hook: str, hook_id: str) -> bool:
        registrations = self._handlers.get(hook) or []
        remaining = [r for r in registrations if r.id != hook_id]
        if len(remaining) == len(registrations):
            return False
        if remaining:
            self._handlers[hook] = remaining
        else:
            self._handlers.pop(hook, None)
        return True

    def has(self, hook: str) -> bool:
        return bool(self._handlers.get(hook))

    async def run(self, hook: str, payload: dict) -> HookRunResult:
        result = HookRunResult(value=dict(payload))
        for registration in list(self._handlers.get(hook) or []):
            try:
                decision = registration.handler(result.value)
                if asyncio.iscoroutine(decision):
                    decision = await decision
            except Exception as e:
                logger.warning(f"Hook {hook} ({registration.id}) raised: {e}")
                result.errors.append(HookError(hook, registration.id, str(e)))
                continue

            if decision is None:
                continue
            if not isinstance(decision, dict):
                raise HookContractError(
                    f"Hook {registration.id} returned {type(decision).__name__}, expected a decision mapping",
                    details={"hook": hook, "hook_id": registration.id},
                )

            action = decision.get("action")
            if action == "continue":
                continue
            if action == "block":
                result.blocked = True
                result.reason = str(decision.get("reason") or "blocked by hook")
                return result
            if action == "patch":
                patch = decision.get("patch")
                if not isinstance(patch, dict):
                    raise HookContractError(
                        f"Hook {registration.id} returned a patch that is not a mapping",
                        details={"hook": hook, "hook_id": registration.id},
                    )
                result.value = {**result.value, **patch}
                result.patch_count += 1
                continue
            raise HookContractError(
                f"Hook {registration.id} returned unknown action: {action!r}",
                details={"hook": hook, "hook_id": registration.id},
            )
        return result
