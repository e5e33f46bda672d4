"""
Agent Loop — alternates model turns and tool execution until the run ends.

Flow per iteration:
  stop? → wait while paused → apply steer input → model turn (retry,
  escalate) → no tool calls: final answer, done
  → tool calls: hook → plan → dispatch → failure envelope / focus retry
  → no-progress check → next model turn

Terminal statuses: ``done``, ``stopped``, ``max_steps``, ``failed_execute``.
Tool failures are never terminal on their own; they go back to the model
as structured tool results.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from .error_catalog import ErrorCatalog, FailureReason
from .errors import AgentError, HookContractError, LlmTerminalError, PlanError, RouteResolutionError, RunCancelled
from .event_bus import EventType
from .hooks import HOOK_LLM_BEFORE_REQUEST, HOOK_TOOL_AFTER_RESULT, HOOK_TOOL_BEFORE_CALL
from .message_model import build_compaction_summary_message, derive_session_title, transform_messages_for_llm
from .models import ExecutionResult, FailureEnvelope, Message, ModeEscalation, ToolCall
from .no_progress import NoProgressDetector, NoProgressTrigger
from .structured_logger import StructuredLogger
from .transport import AssembledMessage

if TYPE_CHECKING:
    from .orchestrator import Orchestrator, RunState

logger = logging.getLogger(__name__)

EMPTY_CONTENT_TEXT = "LLM returned empty content."
TOOL_RESULT_MAX_CHARS = 12_000

# Mutating browser tools that get one automatic forceFocus re-issue
# when the failure suggests a background → focus mode escalation.
AUTO_FOCUS_TOOLS = frozenset({
    "click",
    "fill_element_by_uid",
    "select_option_by_uid",
    "hover_element_by_uid",
    "press_key",
    "scroll_page",
    "navigate_tab",
    "fill_form",
    "computer",
})


class LoopStatus(Enum):
    DONE = "done"
    STOPPED = "stopped"
    MAX_STEPS = "max_steps"
    FAILED_EXECUTE = "failed_execute"


@dataclass
class LoopOptions:
    max_steps: int = 100
    pause_poll_ms: int = 120
    no_progress_window: int = 12
    no_progress_repeat_limit: int = 3
    no_progress_ping_pong_limit: int = 2
    strip_schema_combinators: bool = False
    system_prompt: str = ""


@dataclass
class LoopResult:
    session_id: str
    status: LoopStatus
    final_text: str = ""
    llm_steps: int = 0
    tool_steps: int = 0

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "final_text": self.final_text,
            "llm_steps": self.llm_steps,
            "tool_steps": self.tool_steps,
        }


@dataclass
class _ToolOutcome:
    call: ToolCall
    tool: str
    ok: bool
    content: str
    args: Optional[dict] = None
    envelope: Optional[FailureEnvelope] = None


def _clip(text: str, limit: int = TOOL_RESULT_MAX_CHARS) -> str:
    return text if len(text) <= limit else text[:limit] + "…[truncated]"


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


class AgentLoop:
    """
    One run of the loop for one session.  Built by ``Orchestrator``; holds
    no state beyond the run except what lives on ``RunState``.
    """

    def __init__(
        self,
        orchestrator: "Orchestrator",
        options: Optional[LoopOptions] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._orch = orchestrator
        self.options = options or LoopOptions()
        self._sleep = sleep
        self._no_progress = NoProgressDetector(
            window=self.options.no_progress_window,
            repeat_limit=self.options.no_progress_repeat_limit,
            ping_pong_limit=self.options.no_progress_ping_pong_limit,
        )
        self._history: list[Message] = []
        self._summary = ""

    # ── Public API ──

    async def run(self, session_id: str, prompt: Optional[str] = None) -> LoopResult:
        orch = self._orch
        state = orch.get_run_state(session_id)
        if state.stopped:
            orch.events.emit(EventType.LOOP_SKIP_STOPPED, session_id, reason="stopped_before_run")
            state.running = False
            return LoopResult(session_id, LoopStatus.STOPPED)

        state.running = True
        result = LoopResult(session_id, LoopStatus.DONE)
        log = StructuredLogger(__name__).with_context(session_id=session_id)
        if prompt:
            orch.store.append_message(session_id, Message(role="user", content=prompt))
        orch.events.emit(EventType.LOOP_START, session_id, prompt=(prompt or "")[:3000])
        try:
            await self._run_steps(session_id, state, result)
        except RunCancelled:
            result.status = LoopStatus.STOPPED
        except HookContractError as e:
            logger.error(f"Hook contract violation: {e}")
            self._fail(session_id, result, f"Execution failed: {e.message}")
        except LlmTerminalError as e:
            decision = orch.router.last_decision
            reason = f" (escalation {decision.type}: {decision.reason})" if decision else ""
            self._fail(session_id, result, f"LLM request failed: {e.message}{reason}")
        except RouteResolutionError as e:
            self._fail(session_id, result, f"No usable LLM configuration: {e.message}")
        except AgentError as e:
            logger.error(f"Loop failed: {e}")
            self._fail(session_id, result, f"Execution failed: {e.message}")
        except Exception as e:
            logger.exception(f"Unexpected loop failure: {e}")
            self._fail(session_id, result, f"Execution failed: {e}")
        finally:
            self._refresh_title(session_id)
            state.running = False
            state.retry.reset()
            orch.events.emit(
                EventType.LOOP_DONE, session_id,
                status=result.status.value,
                llm_steps=result.llm_steps,
                tool_steps=result.tool_steps,
            )
        log.info(f"Run finished for session {session_id}: {result.status.value} "
                 f"({result.llm_steps} LLM steps, {result.tool_steps} tool steps)")
        return result

    # ── Main loop ──

    async def _run_steps(self, session_id: str, state: "RunState", result: LoopResult) -> None:
        orch = self._orch
        context = orch.store.build_session_context(session_id)
        self._history = list(context.messages)
        self._summary = context.previous_summary
        if state.route is None:
            state.route = orch.router.resolve(orch.default_profile, orch.default_role)

        while result.llm_steps < self.options.max_steps:
            if await self._stopped_after_pause(state):
                result.status = LoopStatus.STOPPED
                return
            self._apply_steer(session_id, state)

            result.llm_steps += 1
            turn = await self._request_turn(session_id, state, result.llm_steps)
            orch.events.emit(
                EventType.LLM_RESPONSE, session_id,
                step=result.llm_steps, tool_calls=len(turn.tool_calls),
                has_text=bool(turn.content.strip()), profile=state.route.profile,
            )

            if not turn.tool_calls:
                text = turn.content.strip() or EMPTY_CONTENT_TEXT
                self._append(session_id, Message(role="assistant", content=text))
                result.final_text = text
                if state.steer_queue and not state.stopped:
                    # Input steered in while this answer was generated gets its own turn
                    continue
                result.status = LoopStatus.DONE
                return

            self._append(session_id, Message(role="assistant", content=turn.content, tool_calls=list(turn.tool_calls)))
            triggers: list[NoProgressTrigger] = []
            for index, call in enumerate(turn.tool_calls):
                if state.stopped:
                    self._skip_calls(session_id, turn.tool_calls[index:], "run stopped")
                    result.status = LoopStatus.STOPPED
                    return
                if state.steer_queue:
                    # New user input wins over the rest of this turn
                    self._skip_calls(session_id, turn.tool_calls[index:], "superseded by new user input")
                    break

                result.tool_steps += 1
                outcome = await self._execute_tool_call(session_id, state, call, result.tool_steps)
                self._append(session_id, Message(
                    role="tool", content=outcome.content, tool_call_id=call.id, name=outcome.tool,
                ))
                trigger = self._no_progress.record(outcome.tool, outcome.args if outcome.args is not None
                                                   else call.arguments_json)
                if trigger is not None:
                    triggers.append(trigger)

            for trigger in triggers:
                self._inject_no_progress(session_id, trigger, result.tool_steps)

        result.status = LoopStatus.MAX_STEPS
        notice = f"Reached the maximum of {self.options.max_steps} steps; stopping this run."
        self._append(session_id, Message(role="assistant", content=notice))
        result.final_text = notice

    async def _stopped_after_pause(self, state: "RunState") -> bool:
        if state.stopped:
            return True
        while state.paused and not state.stopped:
            await self._sleep(self.options.pause_poll_ms / 1000)
        return state.stopped

    def _apply_steer(self, session_id: str, state: "RunState") -> None:
        while state.steer_queue:
            text = state.steer_queue.popleft()
            self._append(session_id, Message(role="user", content=text))
            self._orch.events.emit(EventType.LOOP_STEER_APPLIED, session_id, text=text[:3000])

    # ── Model turn ──

    def _llm_messages(self) -> list[dict]:
        messages: list[dict] = []
        if self.options.system_prompt:
            messages.append({"role": "system", "content": self.options.system_prompt})
        summary = build_compaction_summary_message(self._summary)
        if summary is not None:
            messages.append(summary)
        messages.extend(transform_messages_for_llm(self._history))
        return messages

    async def _request_turn(self, session_id: str, state: "RunState", step: int) -> AssembledMessage:
        """One model turn; on terminal failure escalate and redo the same turn."""
        orch = self._orch
        while True:
            route = state.route
            payload = {
                "session_id": session_id,
                "step": step,
                "profile": route.profile,
                "messages": self._llm_messages(),
                "tools": orch.contracts.list_llm_tool_definitions(
                    strip_combinators=self.options.strip_schema_combinators,
                ),
            }
            hooked = await orch.hooks.run(HOOK_LLM_BEFORE_REQUEST, payload)
            if hooked.blocked:
                raise AgentError(f"LLM request blocked by hook: {hooked.reason}", code="E_HOOK_BLOCKED")

            def on_delta(text: str) -> None:
                orch.events.emit(EventType.LLM_STREAM_DELTA, session_id, step=step, text=text)

            try:
                return await orch.retry.request_with_retry(
                    session_id, route,
                    hooked.value.get("messages") or payload["messages"],
                    hooked.value.get("tools") or payload["tools"],
                    state.retry,
                    on_delta=on_delta,
                    step=step,
                )
            except LlmTerminalError as e:
                next_route = orch.retry.escalate(session_id, route, e)
                if next_route is None:
                    raise
                logger.warning(f"Retrying step {step} on profile {next_route.profile} after: {e.message}")
                state.route = next_route
                state.retry.reset()

    # ── Tool calls ──

    async def _execute_tool_call(self, session_id: str, state: "RunState", call: ToolCall, step: int) -> _ToolOutcome:
        orch = self._orch
        contract = orch.contracts.resolve(call.name)
        tool = contract.name if contract else call.name
        try:
            args: Optional[dict] = call.parsed_arguments()
        except ValueError:
            args = None
        orch.events.emit(EventType.TOOL_CALL, session_id, step=step, tool=tool,
                         tool_call_id=call.id, arguments=call.arguments_json[:500])

        hooked = await orch.hooks.run(HOOK_TOOL_BEFORE_CALL, {
            "session_id": session_id, "tool": tool, "tool_call_id": call.id, "arguments": args,
        })
        if hooked.blocked:
            envelope = ErrorCatalog.build_failure_envelope(
                tool, f"Tool call blocked: {hooked.reason}", "E_HOOK_BLOCKED",
                error_reason=FailureReason.BLOCKED, args=args,
            )
            return await self._finish(session_id, step, _ToolOutcome(call, tool, False, envelope.to_json(), args, envelope))
        patched = hooked.value.get("arguments")
        if isinstance(patched, dict) and patched != args:
            call, args = call.with_arguments(patched), patched

        result = await self._plan_and_dispatch(session_id, state, call)
        if isinstance(result, FailureEnvelope):
            return await self._finish(session_id, step, _ToolOutcome(call, tool, False, result.to_json(), args, result))
        if result.ok:
            return await self._finish(session_id, step, _ToolOutcome(call, tool, True, _dumps(result.to_dict()), args))

        envelope = self._envelope_for(tool, result, args)
        if envelope.mode_escalation is not None and tool in AUTO_FOCUS_TOOLS and args is not None \
                and args.get("forceFocus") is not True:
            focused_args = {**args, "forceFocus": True}
            orch.events.emit(EventType.TOOL_FOCUS_ESCALATED, session_id, step=step, tool=tool,
                             reason=envelope.mode_escalation.reason)
            logger.info(f"Re-issuing {tool} with forceFocus after {result.error_code}")
            retried = await self._plan_and_dispatch(session_id, state, call.with_arguments(focused_args))
            if isinstance(retried, ExecutionResult) and retried.ok:
                data = retried.to_dict()
                data["focus_escalated"] = True
                return await self._finish(session_id, step, _ToolOutcome(call, tool, True, _dumps(data), focused_args))
            envelope = retried if isinstance(retried, FailureEnvelope) else self._envelope_for(tool, retried, focused_args)
            envelope.details = {"focus_retry": True, "previous_error_code": result.error_code,
                                "result": envelope.details}
            args = focused_args
        return await self._finish(session_id, step, _ToolOutcome(call, tool, False, envelope.to_json(), args, envelope))

    async def _plan_and_dispatch(self, session_id: str, state: "RunState", call: ToolCall):
        """ExecutionResult from the dispatcher, or a FailureEnvelope when planning fails."""
        try:
            plan = await self._orch.planner.resolve(call, session_id, state)
        except PlanError as e:
            contract = self._orch.contracts.resolve(call.name)
            details = dict(e.details) if isinstance(e.details, dict) else ({"info": e.details} if e.details else {})
            if e.supported_tools:
                details["supported_tools"] = e.supported_tools
            return ErrorCatalog.build_failure_envelope(
                contract.name if contract else call.name,
                e.message,
                e.code,
                error_reason=FailureReason.INVALID_ARGS,
                details=details or None,
                raw_args=call.arguments_json,
                retry_hint=e.retry_hint,
                resume_strategy=e.resume_strategy,
            )
        return await self._orch.dispatcher.dispatch(plan, session_id, state)

    @staticmethod
    def _envelope_for(tool: str, result: ExecutionResult, args: Optional[dict]) -> FailureEnvelope:
        return ErrorCatalog.build_failure_envelope(
            tool,
            result.error,
            result.error_code,
            error_reason=result.error_reason or FailureReason.FAILED_EXECUTE,
            details=result.error_details,
            args=args,
        )

    async def _finish(self, session_id: str, step: int, outcome: _ToolOutcome) -> _ToolOutcome:
        hooked = await self._orch.hooks.run(HOOK_TOOL_AFTER_RESULT, {
            "session_id": session_id,
            "tool": outcome.tool,
            "tool_call_id": outcome.call.id,
            "ok": outcome.ok,
            "content": outcome.content,
        })
        if isinstance(hooked.value.get("content"), str):
            outcome.content = hooked.value["content"]
        outcome.content = _clip(outcome.content)
        self._orch.events.emit(
            EventType.TOOL_RESULT, session_id,
            step=step, tool=outcome.tool, tool_call_id=outcome.call.id, ok=outcome.ok,
            error_code=outcome.envelope.error_code if outcome.envelope else None,
            preview=outcome.content[:800],
        )
        return outcome

    def _skip_calls(self, session_id: str, calls: list[ToolCall], reason: str) -> None:
        for call in calls:
            self._append(session_id, Message(
                role="tool", content=_dumps({"ok": False, "skipped": True, "reason": reason}),
                tool_call_id=call.id, name=call.name,
            ))

    def _inject_no_progress(self, session_id: str, trigger: NoProgressTrigger, step: int) -> None:
        tool = trigger.tool
        envelope = ErrorCatalog.build_failure_envelope(
            tool,
            f"No progress: {trigger.kind} repeated {trigger.streak} times",
            "E_NO_PROGRESS",
            error_reason=FailureReason.PROGRESS_UNCERTAIN,
            details=trigger.to_dict(),
        )
        if tool in AUTO_FOCUS_TOOLS and envelope.mode_escalation is None:
            envelope.mode_escalation = ModeEscalation(reason="no_progress")
        self._orch.events.emit(EventType.LOOP_NO_PROGRESS, session_id, step=step, **trigger.to_dict())
        text = (
            "The last tool calls are not making progress. Re-observe the page "
            "(search_elements or get_current_tab) and change strategy before retrying.\n"
            + envelope.to_json()
        )
        self._append(session_id, Message(role="user", content=text))

    # ── Bookkeeping ──

    def _append(self, session_id: str, message: Message) -> None:
        self._history.append(message)
        self._orch.store.append_message(session_id, message)

    def _fail(self, session_id: str, result: LoopResult, text: str) -> None:
        result.status = LoopStatus.FAILED_EXECUTE
        result.final_text = text
        self._append(session_id, Message(role="assistant", content=text, stop_reason="error"))
        self._orch.events.emit(EventType.LOOP_ERROR, session_id, message=text)

    def _refresh_title(self, session_id: str) -> None:
        """Best effort; never changes the run's status."""
        orch = self._orch
        try:
            meta = orch.store.get_meta(session_id)
            if meta is None or meta.title_auto:
                return
            title = derive_session_title(orch.store.get_messages(session_id))
            if title and title != meta.title:
                orch.store.update_meta(session_id, title=title, title_auto=True)
                orch.events.emit(EventType.SESSION_TITLE_UPDATED, session_id, title=title)
        except Exception as e:
            logger.warning(f"Session title refresh failed: {e}")
            orch.events.emit(EventType.SESSION_TITLE_FAILED, session_id, error=str(e))
