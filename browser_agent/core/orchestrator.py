"""
Orchestrator — owns the engine's registries and per-session run state.

One ``Orchestrator`` wires everything a run needs (session store, tool
contracts, capability providers and policies, tab leases, LLM routing,
hooks, event bus) and hands it to ``AgentLoop``.  Nothing here is a
module-level singleton: hosts construct an orchestrator and register
their providers on it.

Run control is cooperative.  ``stop`` and ``pause`` only flip flags on the
session's ``RunState``; the loop checks them at the start of each
iteration and between tool calls.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx

from .agent import AgentLoop, LoopOptions, LoopResult
from .capabilities import CapabilityPolicyRegistry, CapabilityProvider, CapabilityRegistry, StepInput
from .event_bus import EventBus
from .hooks import HookRunner
from .lease import DEFAULT_LEASE_TTL_MS, TabLeaseManager
from .model_router import LlmRoute, ModelRouter, clamp_int
from .models import RetryState
from .planner import DEFAULT_BASH_TIMEOUT_MS, ToolPlanner, parse_positive_int
from .providers import LlmProviderRegistry, OpenAICompatibleProvider
from .dispatcher import TOOL_AUTO_RETRY_MAX, CapabilityDispatcher
from .retry import LlmRetryController
from .session_store import InMemorySessionStore
from .tool_contracts import ToolContractRegistry
from .transport import ModelTransport

logger = logging.getLogger(__name__)


@dataclass
class RunState:
    """Mutable per-session run flags and queues."""
    session_id: str
    running: bool = False
    paused: bool = False
    stopped: bool = False
    retry: RetryState = field(default_factory=RetryState)
    steer_queue: deque = field(default_factory=deque)
    follow_up_queue: deque = field(default_factory=deque)
    route: Optional[LlmRoute] = None
    last_target_id: Optional[int] = None
    shared_target_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "running": self.running,
            "paused": self.paused,
            "stopped": self.stopped,
            "retry": self.retry.to_dict(),
            "queued_steer": len(self.steer_queue),
            "queued_follow_up": len(self.follow_up_queue),
            "profile": self.route.profile if self.route else None,
            "last_target_id": self.last_target_id,
            "shared_target_ids": list(self.shared_target_ids),
        }


def loop_options_from_config(agent_cfg: dict) -> LoopOptions:
    return LoopOptions(
        max_steps=clamp_int(agent_cfg.get("max_steps"), 100, 1, 500),
        pause_poll_ms=clamp_int(agent_cfg.get("pause_poll_ms"), 120, 10, 5000),
        no_progress_window=clamp_int(agent_cfg.get("no_progress_window"), 12, 4, 200),
        no_progress_repeat_limit=clamp_int(agent_cfg.get("no_progress_repeat_limit"), 3, 1, 50),
        no_progress_ping_pong_limit=clamp_int(agent_cfg.get("no_progress_ping_pong_limit"), 2, 1, 50),
        strip_schema_combinators=bool(agent_cfg.get("strip_schema_combinators", False)),
        system_prompt=str(agent_cfg.get("system_prompt") or ""),
    )


class Orchestrator:
    """
    Usage:
        orch = Orchestrator(config.as_dict())
        orch.register_provider(LocalBridgeProvider(...))
        session_id = orch.store.create_session()
        result = await orch.run(session_id, "Open example.com and read the title")
    """

    def __init__(
        self,
        config: Optional[dict] = None,
        store: Optional[InMemorySessionStore] = None,
        events: Optional[EventBus] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        active_target: Optional[Callable[[str], Awaitable[Optional[int]]]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        config = config or {}
        llm_cfg = config.get("llm") or {}
        agent_cfg = config.get("agent") or {}
        bridge_cfg = config.get("bridge") or {}

        self.events = events or EventBus()
        self.store = store or InMemorySessionStore()
        self.hooks = HookRunner()
        self.contracts = ToolContractRegistry()
        self.capabilities = CapabilityRegistry()
        self.policies = CapabilityPolicyRegistry()
        self.leases = TabLeaseManager(
            default_ttl_ms=clamp_int(agent_cfg.get("lease_ttl_ms"), DEFAULT_LEASE_TTL_MS, 1000, 600_000),
        )

        self.llm_providers = LlmProviderRegistry()
        self.llm_providers.register(OpenAICompatibleProvider())
        self.router = ModelRouter(llm_cfg, self.llm_providers)
        self.transport = ModelTransport(http_client)
        self.retry = LlmRetryController(self.transport, self.llm_providers, self.router, self.events, sleep)

        self.planner = ToolPlanner(
            self.contracts,
            active_target=active_target or self._current_tab_id,
            bash_timeout_ms=clamp_int(bridge_cfg.get("bash_timeout_ms"), DEFAULT_BASH_TIMEOUT_MS, 200, 300_000),
        )
        self.dispatcher = CapabilityDispatcher(
            self.capabilities,
            self.policies,
            self.leases,
            self.events,
            verify_policy=agent_cfg.get("verify_policy") or None,
            strict_verify=bool(agent_cfg.get("strict_verify", False)),
            lease_ttl_ms=self.leases.default_ttl_ms,
            auto_retry_max=clamp_int(agent_cfg.get("tool_auto_retry_max"), TOOL_AUTO_RETRY_MAX, 0, 6),
            sleep=sleep,
        )
        self.loop_options = loop_options_from_config(agent_cfg)
        self.default_profile: Optional[str] = llm_cfg.get("default_profile") or None
        self.default_role: Optional[str] = llm_cfg.get("role") or None
        self._sleep = sleep
        self._retry_max_attempts = clamp_int(llm_cfg.get("retry_max_attempts"), 2, 0, 6)

        self._states: dict[str, RunState] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    # ── Registration ──

    def register_provider(self, provider: CapabilityProvider, replace: bool = False) -> None:
        self.capabilities.register(provider, replace=replace)

    def register_providers(self, providers: list[CapabilityProvider], replace: bool = False) -> None:
        for provider in providers:
            self.capabilities.register(provider, replace=replace)

    async def _current_tab_id(self, session_id: str) -> Optional[int]:
        """Ask the registered ``browser.tabs`` provider for the active tab, if there is one."""
        provider = self.capabilities.resolve("browser.tabs")
        if provider is None:
            return None
        data = await provider.invoke(StepInput(session_id, "browser.tabs", provider.mode, "current", {}))
        if not isinstance(data, dict):
            return None
        tab = data.get("tab") if isinstance(data.get("tab"), dict) else data
        return parse_positive_int(tab.get("id"))

    # ── Run state ──

    def get_run_state(self, session_id: str) -> RunState:
        state = self._states.get(session_id)
        if state is None:
            state = RunState(session_id=session_id)
            state.retry.max_attempts = self._retry_max_attempts
            self._states[session_id] = state
        return state

    def pause(self, session_id: str) -> RunState:
        state = self.get_run_state(session_id)
        state.paused = True
        return state

    def resume(self, session_id: str) -> RunState:
        state = self.get_run_state(session_id)
        state.paused = False
        return state

    def stop(self, session_id: str) -> RunState:
        state = self.get_run_state(session_id)
        state.stopped = True
        state.paused = False
        state.steer_queue.clear()
        state.follow_up_queue.clear()
        logger.info(f"Stop requested for session {session_id}")
        return state

    def restart(self, session_id: str) -> RunState:
        state = self.get_run_state(session_id)
        state.stopped = False
        state.paused = False
        return state

    def set_shared_targets(self, session_id: str, target_ids: list[Any]) -> RunState:
        state = self.get_run_state(session_id)
        state.shared_target_ids = [t for t in (parse_positive_int(x) for x in target_ids) if t]
        return state

    # ── Runs ──

    def _new_loop(self) -> AgentLoop:
        return AgentLoop(self, self.loop_options, sleep=self._sleep)

    async def run(self, session_id: str, prompt: Optional[str] = None) -> LoopResult:
        """Run one prompt to completion, then any steers or follow-ups queued meanwhile."""
        if not self.store.has_session(session_id):
            self.store.create_session(session_id)
        state = self.get_run_state(session_id)
        result = await self._new_loop().run(session_id, prompt)
        while (state.steer_queue or state.follow_up_queue) and not state.stopped:
            # Steers left over from a finished run go before queued follow-ups
            queue = state.steer_queue if state.steer_queue else state.follow_up_queue
            follow_up = queue.popleft()
            logger.info(f"Starting follow-up run for session {session_id}")
            result = await self._new_loop().run(session_id, follow_up)
        return result

    def start_run(self, session_id: str, prompt: str) -> asyncio.Task:
        """
        Schedule a run.  While a run is active the prompt is queued as a
        follow-up instead, and the active task is returned.
        """
        state = self.get_run_state(session_id)
        task = self._tasks.get(session_id)
        if state.running and task is not None and not task.done():
            state.follow_up_queue.append(prompt)
            return task
        state.stopped = False
        # Marked running before the task is first scheduled so a prompt
        # arriving in between is queued, not started twice.
        state.running = True
        task = asyncio.ensure_future(self.run(session_id, prompt))
        self._tasks[session_id] = task
        return task

    def steer(self, session_id: str, text: str) -> RunState:
        """Inject ``text`` into the active run before its next model turn (starts a run when idle)."""
        state = self.get_run_state(session_id)
        if state.running:
            state.steer_queue.append(text)
        else:
            self.start_run(session_id, text)
        return state

    def follow_up(self, session_id: str, text: str) -> RunState:
        """Run ``text`` after the active run settles (starts a run when idle)."""
        state = self.get_run_state(session_id)
        if state.running:
            state.follow_up_queue.append(text)
        else:
            self.start_run(session_id, text)
        return state

    async def wait(self, session_id: str) -> Optional[LoopResult]:
        task = self._tasks.get(session_id)
        if task is None:
            return None
        return await task
