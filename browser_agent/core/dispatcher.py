"""
Capability Dispatcher — executes one plan against exactly one backend.

For browser actions the flow is:

    lease (lease-worthy kinds) → pre-observe (best effort) → execute
    → verify (explicit expect, else before/after progress) → result

Provider failures classified ``auto_replay`` are retried here with
``min(2000, 300 * 2**(attempt-1))`` ms backoff and never reach the model.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from .capabilities import (
    MODE_BRIDGE, MODE_CDP, MODE_VIRTUAL, VERIFY_OFF,
    CapabilityPolicyRegistry, CapabilityRegistry, StepInput,
)
from .element_search import rank_elements
from .error_catalog import ErrorCatalog, FailureAction, FailureReason
from .errors import AgentError
from .event_bus import EventBus, EventType
from .lease import DEFAULT_LEASE_TTL_MS, TabLeaseManager
from .models import ExecutionResult
from .planner import (
    BridgePlan, BrowserActionPlan, BrowserSnapshotPlan, BrowserVerifyPlan,
    LocalPlan, ToolPlan, VirtualFsPlan, parse_positive_int,
)
from .verification import (
    VERIFIED, VERIFY_FAILED, VERIFY_MISSING_TAB_ID, VERIFY_NOT_SUPPORTED_FOR_BRIDGE,
    VERIFY_POLICY_OFF, VERIFY_SKIPPED, build_observe_progress_verify, normalize_verify_expect,
    observed_url, requires_lease, should_verify,
)

if TYPE_CHECKING:
    from .orchestrator import RunState

logger = logging.getLogger(__name__)

TOOL_AUTO_RETRY_MAX = 2
TOOL_RETRY_BASE_MS = 300
TOOL_RETRY_CAP_MS = 2000


def compute_tool_retry_delay_ms(attempt: int) -> int:
    exponent = min(max(0, attempt - 1), 16)
    return min(TOOL_RETRY_CAP_MS, TOOL_RETRY_BASE_MS * (2 ** exponent))


class _NoProvider(AgentError):
    default_code = "E_NO_PROVIDER"


class CapabilityDispatcher:
    """
    Usage:
        dispatcher = CapabilityDispatcher(capabilities, policies, leases, events)
        result = await dispatcher.dispatch(plan, session_id, run_state)
    """

    def __init__(
        self,
        capabilities: CapabilityRegistry,
        policies: Optional[CapabilityPolicyRegistry] = None,
        leases: Optional[TabLeaseManager] = None,
        events: Optional[EventBus] = None,
        verify_policy: Optional[str] = None,
        strict_verify: bool = False,
        lease_ttl_ms: int = DEFAULT_LEASE_TTL_MS,
        auto_retry_max: int = TOOL_AUTO_RETRY_MAX,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._capabilities = capabilities
        self._policies = policies or CapabilityPolicyRegistry()
        self._leases = leases or TabLeaseManager()
        self._events = events or EventBus()
        self._verify_policy = verify_policy
        self._strict_verify = strict_verify
        self._lease_ttl_ms = lease_ttl_ms
        self._auto_retry_max = max(0, auto_retry_max)
        self._sleep = sleep
        self._handlers: dict[type, Callable[..., Awaitable[ExecutionResult]]] = {
            BridgePlan: self._run_bridge,
            VirtualFsPlan: self._run_virtual_fs,
            BrowserSnapshotPlan: self._run_snapshot,
            BrowserActionPlan: self._run_action,
            BrowserVerifyPlan: self._run_verify,
            LocalPlan: self._run_local,
        }

    async def dispatch(self, plan: ToolPlan, session_id: str, state: Optional["RunState"] = None) -> ExecutionResult:
        handler = self._handlers.get(type(plan))
        if handler is None:
            raise TypeError(f"No dispatcher handler for plan type {type(plan).__name__}")
        result = await handler(plan, session_id, state)
        self._events.emit(
            EventType.STEP_EXECUTE_RESULT, session_id,
            tool=plan.tool, ok=result.ok, mode_used=result.mode_used,
            verified=result.verified, verify_reason=result.verify_reason or "",
            error_code=result.error_code or "", retryable=result.retryable,
            attempts=result.attempts,
        )
        return result

    # ── Provider calls ──

    def _provider(self, capability: str, mode: Optional[str]):
        provider = self._capabilities.resolve(capability, mode)
        if provider is None:
            where = f"{capability}/{mode}" if mode else capability
            raise _NoProvider(f"No capability provider registered for {where}")
        return provider

    async def _invoke(self, capability: str, mode: Optional[str], step: StepInput) -> Any:
        provider = self._provider(capability, mode)
        return await provider.invoke(step)

    async def _invoke_with_replay(self, tool: str, capability: str, mode: Optional[str],
                                  step: StepInput) -> tuple[Any, int]:
        """Invoke, transparently replaying ``auto_replay`` failures; returns (data, attempts)."""
        total = self._auto_retry_max + 1
        for attempt in range(1, total + 1):
            try:
                return await self._invoke(capability, mode, step), attempt
            except _NoProvider:
                raise
            except AgentError as e:
                classification = ErrorCatalog.classify(tool, e.code)
                if classification.action is not FailureAction.AUTO_REPLAY or attempt >= total:
                    e.attempts = attempt
                    raise
                delay_ms = compute_tool_retry_delay_ms(attempt)
                logger.info(f"Auto-replaying {tool} after {e.code} (attempt {attempt}/{total}, {delay_ms}ms)")
                await self._sleep(delay_ms / 1000)
        raise AssertionError("unreachable")

    @staticmethod
    def _failure(error: BaseException, mode: Optional[str], reason: str = FailureReason.FAILED_EXECUTE,
                 code: Optional[str] = None, retryable: Optional[bool] = None) -> ExecutionResult:
        if isinstance(error, AgentError):
            return ExecutionResult.failure(
                error.message,
                code or error.code,
                error_details=error.details,
                retryable=error.retryable if retryable is None else retryable,
                error_reason=reason,
                mode_used=mode,
                attempts=getattr(error, "attempts", 1),
            )
        logger.warning(f"Capability provider raised {type(error).__name__}: {error}")
        return ExecutionResult.failure(
            str(error) or type(error).__name__,
            code or "E_EXECUTE",
            retryable=bool(retryable),
            error_reason=reason,
            mode_used=mode,
        )

    def _verify_policy_for(self, capability: str) -> str:
        return self._verify_policy or self._policies.resolve(capability).default_verify_policy or VERIFY_OFF

    # ── Handlers ──

    async def _run_bridge(self, plan: BridgePlan, session_id: str, state) -> ExecutionResult:
        step = StepInput(session_id, plan.capability, MODE_BRIDGE, "invoke", {"frame": plan.frame})
        verify_reason = (
            VERIFY_POLICY_OFF
            if self._policies.resolve(plan.capability).default_verify_policy in (None, VERIFY_OFF)
            else VERIFY_NOT_SUPPORTED_FOR_BRIDGE
        )
        try:
            data, attempts = await self._invoke_with_replay(plan.tool, plan.capability, MODE_BRIDGE, step)
        except Exception as e:
            return self._failure(e, MODE_BRIDGE)
        return ExecutionResult.success(data, verify_reason=verify_reason, mode_used=MODE_BRIDGE, attempts=attempts)

    async def _run_virtual_fs(self, plan: VirtualFsPlan, session_id: str, state) -> ExecutionResult:
        step = StepInput(session_id, plan.capability, MODE_VIRTUAL, plan.op, dict(plan.args))
        try:
            data, attempts = await self._invoke_with_replay(plan.tool, plan.capability, MODE_VIRTUAL, step)
        except Exception as e:
            return self._failure(e, MODE_VIRTUAL)
        return ExecutionResult.success(data, verify_reason=VERIFY_POLICY_OFF, mode_used=MODE_VIRTUAL, attempts=attempts)

    async def _run_snapshot(self, plan: BrowserSnapshotPlan, session_id: str, state) -> ExecutionResult:
        step = StepInput(session_id, "browser.snapshot", MODE_CDP, plan.action,
                         {"options": dict(plan.options)}, tab_id=plan.tab_id)
        try:
            data, attempts = await self._invoke_with_replay(plan.tool, "browser.snapshot", MODE_CDP, step)
        except Exception as e:
            return self._failure(e, MODE_CDP)

        if plan.action == "snapshot" and isinstance(data, dict):
            nodes = data.get("nodes") if isinstance(data.get("nodes"), list) else []
            ranked = rank_elements(nodes, plan.query, plan.max_results)
            data = {
                **{k: v for k, v in data.items() if k != "nodes"},
                "tabId": plan.tab_id,
                "query": plan.query,
                "total": len(nodes),
                "count": len(ranked),
                "nodes": [r.to_dict() for r in ranked],
            }
        return ExecutionResult.success(data, verify_reason=VERIFY_POLICY_OFF, mode_used=MODE_CDP, attempts=attempts)

    async def _observe(self, session_id: str, tab_id: int) -> Any:
        step = StepInput(session_id, "browser.snapshot", MODE_CDP, "observe", {}, tab_id=tab_id)
        return await self._invoke("browser.snapshot", MODE_CDP, step)

    async def _execute_action(self, plan: BrowserActionPlan, session_id: str) -> tuple[Any, int]:
        focus = {"forceFocus": plan.force_focus, "requireFocus": plan.require_focus}
        if not plan.steps:
            step = StepInput(session_id, "browser.action", MODE_CDP, "action",
                             {"action": dict(plan.action), **focus}, tab_id=plan.tab_id)
            return await self._invoke_with_replay(plan.tool, "browser.action", MODE_CDP, step)

        results = []
        attempts = 1
        for item in plan.steps:
            step = StepInput(session_id, "browser.action", MODE_CDP, "action",
                             {"action": dict(item), **focus}, tab_id=plan.tab_id)
            data, used = await self._invoke_with_replay(plan.tool, "browser.action", MODE_CDP, step)
            attempts = max(attempts, used)
            results.append(data)
        return {"steps": results, "count": len(results)}, attempts

    async def _observe_then_execute(self, plan: BrowserActionPlan, session_id: str,
                                    observe: bool) -> tuple[Any, Any, int]:
        pre_observe = None
        if observe:
            try:
                pre_observe = await self._observe(session_id, plan.tab_id)
            except Exception as e:
                logger.debug(f"Pre-action observe failed for tab {plan.tab_id}: {e}")
        data, attempts = await self._execute_action(plan, session_id)
        return pre_observe, data, attempts

    async def _run_action(self, plan: BrowserActionPlan, session_id: str, state) -> ExecutionResult:
        policy = self._policies.resolve("browser.action")
        wants_verify = should_verify(plan.kind, self._verify_policy_for("browser.action"))
        has_tab = parse_positive_int(plan.tab_id) is not None
        verify_enabled = wants_verify and has_tab

        try:
            self._provider("browser.action", MODE_CDP)
        except _NoProvider as e:
            return self._failure(e, MODE_CDP)

        try:
            if has_tab and requires_lease(plan.kind, policy.lease_policy):
                async with self._leases.lease(f"tab:{plan.tab_id}", session_id, self._lease_ttl_ms):
                    pre_observe, data, attempts = await self._observe_then_execute(plan, session_id, verify_enabled)
            else:
                pre_observe, data, attempts = await self._observe_then_execute(plan, session_id, verify_enabled)
        except Exception as e:
            return self._failure(e, MODE_CDP)

        verified = False
        verify_reason = VERIFY_MISSING_TAB_ID if wants_verify and not has_tab else VERIFY_POLICY_OFF
        verify_data = None
        if verify_enabled:
            try:
                verify_data = await self._verify_after(plan, session_id, data, pre_observe)
            except Exception as e:
                code = None if isinstance(e, AgentError) else "E_VERIFY_EXECUTE"
                return self._failure(e, MODE_CDP, code=code, retryable=True)
            verified = isinstance(verify_data, dict) and verify_data.get("ok") is True
            verify_reason = (VERIFIED if verified else VERIFY_FAILED) if verify_data is not None else VERIFY_SKIPPED
            if verify_data is not None and isinstance(data, dict):
                data = {**data, "verify": verify_data}

        if verify_enabled and not verified and plan.hard_verify:
            return ExecutionResult.failure(
                f"{plan.tool} ran but did not pass verification",
                "E_VERIFY_FAILED",
                error_details={"verify_reason": verify_reason, "data": data},
                retryable=True,
                error_reason=FailureReason.FAILED_VERIFY,
                mode_used=MODE_CDP,
                attempts=attempts,
            )
        if self._strict_verify and verify_reason == VERIFY_FAILED:
            return ExecutionResult.failure(
                f"{plan.tool} ran but the page did not visibly change",
                "E_VERIFY_FAILED",
                error_details={"verify_reason": verify_reason, "data": data},
                retryable=True,
                error_reason=FailureReason.PROGRESS_UNCERTAIN,
                mode_used=MODE_CDP,
                attempts=attempts,
            )
        return ExecutionResult.success(data, verified=verified, verify_reason=verify_reason,
                                       mode_used=MODE_CDP, attempts=attempts)

    async def _verify_after(self, plan: BrowserActionPlan, session_id: str, data: Any, pre_observe: Any) -> Any:
        expect = dict(plan.expect) if plan.expect else None
        if expect:
            if expect.get("urlChanged") is True and observed_url(pre_observe):
                expect["previousUrl"] = observed_url(pre_observe)
            step = StepInput(session_id, "browser.verify", MODE_CDP, "verify",
                             {"expect": expect, "result": data}, tab_id=plan.tab_id)
            return await self._invoke("browser.verify", MODE_CDP, step)
        if pre_observe is not None:
            after = await self._observe(session_id, plan.tab_id)
            return build_observe_progress_verify(pre_observe, after)
        return None

    async def _run_verify(self, plan: BrowserVerifyPlan, session_id: str, state) -> ExecutionResult:
        step = StepInput(session_id, "browser.verify", MODE_CDP, "verify",
                         {"expect": normalize_verify_expect(plan.expect) or {}}, tab_id=plan.tab_id)
        try:
            data, attempts = await self._invoke_with_replay(plan.tool, "browser.verify", MODE_CDP, step)
        except Exception as e:
            return self._failure(e, MODE_CDP)

        verified = isinstance(data, dict) and data.get("ok") is True
        if not verified:
            return ExecutionResult.failure(
                "browser_verify did not pass",
                "E_VERIFY_FAILED",
                error_details=data,
                retryable=True,
                error_reason=FailureReason.FAILED_VERIFY,
                mode_used=MODE_CDP,
                attempts=attempts,
            )
        return ExecutionResult.success(data, verified=True, verify_reason=VERIFIED,
                                       mode_used=MODE_CDP, attempts=attempts)

    async def _run_local(self, plan: LocalPlan, session_id: str, state) -> ExecutionResult:
        step = StepInput(session_id, "browser.tabs", MODE_CDP, plan.op, dict(plan.args),
                         tab_id=plan.args.get("tabId"))
        try:
            data, attempts = await self._invoke_with_replay(plan.tool, "browser.tabs", None, step)
        except Exception as e:
            return self._failure(e, MODE_CDP)

        if state is not None:
            if plan.op == "close" and state.last_target_id == plan.args.get("tabId"):
                state.last_target_id = None
            elif plan.op == "create" and plan.args.get("active") and isinstance(data, dict):
                tab = data.get("tab") if isinstance(data.get("tab"), dict) else data
                new_id = parse_positive_int(tab.get("id"))
                if new_id:
                    state.last_target_id = new_id
        return ExecutionResult.success(data, verify_reason=VERIFY_POLICY_OFF, mode_used=MODE_CDP, attempts=attempts)
