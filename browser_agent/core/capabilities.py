"""
Capability providers, their registry, and per-capability execution policy.

A capability (``process.exec``, ``fs.read``, ``browser.action`` ...) is an
abstract action category.  Concrete backends register as providers for a
``(capability, mode)`` pair; the dispatcher looks them up and never picks a
different backend on its own.

The registry is owned by whoever builds the engine (normally the
``Orchestrator``) and passed in explicitly.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

MODE_BRIDGE = "bridge"
MODE_CDP = "cdp"
MODE_SCRIPT = "script"
MODE_VIRTUAL = "virtual"

VERIFY_OFF = "off"
VERIFY_ON_CRITICAL = "on_critical"
VERIFY_ALWAYS = "always"
VERIFY_POLICIES = (VERIFY_OFF, VERIFY_ON_CRITICAL, VERIFY_ALWAYS)


@dataclass
class StepInput:
    """What a provider receives for one backend call."""
    session_id: str
    capability: str
    mode: str
    action: str
    args: dict = field(default_factory=dict)
    tab_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "capability": self.capability,
            "mode": self.mode,
            "action": self.action,
            "args": self.args,
            "tab_id": self.tab_id,
        }


# ── Providers ───────────────────────────────────────────────────────

class CapabilityProvider(ABC):
    """Abstract backend for one capability in one execution mode."""

    id: str = ""
    capability: str = ""
    mode: str = MODE_BRIDGE

    @abstractmethod
    async def invoke(self, step: StepInput) -> Any:
        """Run the step and return backend data; raise ``AgentError`` on failure."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id} {self.capability}/{self.mode}>"


class FunctionProvider(CapabilityProvider):
    """Adapter turning a plain coroutine function into a provider."""

    def __init__(
        self,
        provider_id: str,
        capability: str,
        mode: str,
        fn: Callable[[StepInput], Awaitable[Any]],
    ):
        self.id = provider_id
        self.capability = capability
        self.mode = mode
        self._fn = fn

    async def invoke(self, step: StepInput) -> Any:
        return await self._fn(step)


class CapabilityRegistry:
    """Providers keyed by ``(capability, mode)``."""

    def __init__(self):
        self._providers: dict[tuple[str, str], CapabilityProvider] = {}

    def register(self, provider: CapabilityProvider, replace: bool = False) -> None:
        capability = str(provider.capability or "").strip()
        mode = str(provider.mode or "").strip()
        if not capability:
            raise ValueError("capability must not be empty")
        if not mode:
            raise ValueError(f"provider mode must not be empty: {provider.id}")
        key = (capability, mode)
        if key in self._providers and not replace:
            raise ValueError(f"provider already registered: {capability}/{mode}")
        self._providers[key] = provider
        logger.debug(f"Registered capability provider {provider.id} for {capability}/{mode}")

    def unregister(self, capability: str, mode: str, expected_id: Optional[str] = None) -> bool:
        key = (str(capability or "").strip(), str(mode or "").strip())
        current = self._providers.get(key)
        if current is None:
            return False
        if expected_id and current.id != expected_id:
            return False
        del self._providers[key]
        return True

    def resolve(self, capability: str, mode: Optional[str] = None) -> Optional[CapabilityProvider]:
        """Exact ``(capability, mode)`` match; without a mode, the first registered."""
        capability = str(capability or "").strip()
        if mode:
            return self._providers.get((capability, mode))
        for (cap, _), provider in self._providers.items():
            if cap == capability:
                return provider
        return None

    def has(self, capability: str, mode: Optional[str] = None) -> bool:
        return self.resolve(capability, mode) is not None

    def list(self) -> list[dict]:
        return [
            {"capability": cap, "mode": mode, "id": provider.id}
            for (cap, mode), provider in self._providers.items()
        ]


# ── Policy ──────────────────────────────────────────────────────────

@dataclass
class CapabilityPolicy:
    fallback_mode: Optional[str] = None
    default_verify_policy: Optional[str] = None
    lease_policy: Optional[str] = None        # auto / required / none
    allow_script_fallback: Optional[bool] = None

    def merged_with(self, other: "CapabilityPolicy") -> "CapabilityPolicy":
        changes = {k: v for k, v in other.__dict__.items() if v is not None}
        return replace(self, **changes)


def _bridge_policy() -> CapabilityPolicy:
    return CapabilityPolicy(MODE_BRIDGE, VERIFY_OFF, "none", False)


BUILTIN_POLICIES: dict[str, CapabilityPolicy] = {
    "process.exec": _bridge_policy(),
    "fs.read": _bridge_policy(),
    "fs.write": _bridge_policy(),
    "fs.edit": _bridge_policy(),
    "fs.list": _bridge_policy(),
    "browser.snapshot": CapabilityPolicy(MODE_CDP, VERIFY_OFF, "none", False),
    "browser.action": CapabilityPolicy(MODE_CDP, VERIFY_ON_CRITICAL, "auto", True),
    "browser.verify": CapabilityPolicy(MODE_CDP, VERIFY_ALWAYS, "none", False),
}


class CapabilityPolicyRegistry:
    """Built-in policies with per-capability overrides layered on top."""

    def __init__(self, table: Optional[dict[str, CapabilityPolicy]] = None):
        self._builtin = dict(BUILTIN_POLICIES if table is None else table)
        self._overrides: dict[str, tuple[str, CapabilityPolicy]] = {}

    def register(
        self,
        capability: str,
        policy: CapabilityPolicy,
        replace: bool = False,
        policy_id: Optional[str] = None,
    ) -> str:
        key = str(capability or "").strip()
        if not key:
            raise ValueError("capability must not be empty")
        if key in self._overrides and not replace:
            raise ValueError(f"capability policy already registered: {key}")
        pid = str(policy_id or "").strip() or f"policy:{key}"
        self._overrides[key] = (pid, policy)
        return pid

    def unregister(self, capability: str, expected_id: Optional[str] = None) -> bool:
        key = str(capability or "").strip()
        current = self._overrides.get(key)
        if current is None:
            return False
        if expected_id and current[0] != expected_id:
            return False
        del self._overrides[key]
        return True

    def resolve(self, capability: str) -> CapabilityPolicy:
        key = str(capability or "").strip()
        base = self._builtin.get(key, CapabilityPolicy())
        override = self._overrides.get(key)
        return base.merged_with(override[1]) if override else replace(base)

    def list(self) -> list[dict]:
        out = []
        for key in sorted(set(self._builtin) | set(self._overrides)):
            source = "override" if key in self._overrides else "builtin"
            pid = self._overrides[key][0] if key in self._overrides else f"builtin:{key}"
            out.append({"capability": key, "source": source, "id": pid, "policy": self.resolve(key).__dict__})
        return out
