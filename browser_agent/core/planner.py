"""
Tool Planner — turns a model tool call into an execution plan.

``ToolPlanner.resolve`` runs, strictly in order:

1. parse ``arguments_json`` (failure is terminal for the call),
2. resolve the name through the contract registry (aliases included),
3. validate required arguments and clamp optional ones,
4. for tab-scoped tools, pick a target: explicit ``tabId``, the session's
   last-used tab, the first shared tab, then the active tab; the choice is
   written back to the session so later calls default consistently.

Plans are plain dataclasses; the dispatcher has exactly one handler per
plan type.  Nothing here touches a backend except the optional active-tab
lookup.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union

from .error_catalog import ResumeStrategy
from .errors import PlanError
from .models import ToolCall
from .tool_contracts import ToolContractRegistry
from .verification import normalize_verify_expect

if TYPE_CHECKING:
    from .orchestrator import RunState

logger = logging.getLogger(__name__)

DEFAULT_BASH_TIMEOUT_MS = 120_000
MIN_BASH_TIMEOUT_MS = 200
MAX_BASH_TIMEOUT_MS = 300_000
DEFAULT_SCROLL_DELTA = 600
MAX_SCROLL_DELTA = 20_000
MAX_WAIT_MS = 10_000
DEFAULT_SEARCH_RESULTS = 20
MAX_SEARCH_RESULTS = 200

VIRTUAL_SCHEMES = ("mem://", "vfs://")
WRITE_MODES = ("overwrite", "append", "create")

# computer actions → lease/verify kind
COMPUTER_ACTION_KINDS = {
    "mouse_move": "hover",
    "left_click": "click",
    "right_click": "click",
    "double_click": "click",
    "left_click_drag": "click",
    "scroll": "scroll",
    "type": "type",
    "key": "press",
    "wait": "wait",
}
_COORDINATE_ACTIONS = frozenset({"mouse_move", "left_click", "right_click", "double_click", "left_click_drag"})

ActiveTargetResolver = Callable[[str], Awaitable[Optional[int]]]


# ── Plans ───────────────────────────────────────────────────────────

@dataclass
class BridgePlan:
    """Local process/file call through the bridge backend."""
    tool: str
    capability: str
    frame: dict


@dataclass
class VirtualFsPlan:
    """File operation against the in-memory virtual filesystem."""
    tool: str
    capability: str
    op: str                     # read / write / edit / list
    args: dict


@dataclass
class BrowserSnapshotPlan:
    tool: str
    tab_id: int
    action: str                 # snapshot / screenshot
    options: dict = field(default_factory=dict)
    query: str = ""
    max_results: int = DEFAULT_SEARCH_RESULTS


@dataclass
class BrowserActionPlan:
    tool: str
    tab_id: Optional[int]  # None: provider picks the tab; no lease or verification
    kind: str
    action: dict
    expect: Optional[dict] = None
    # fill_form: fills plus optional submit, run under one lease
    steps: list[dict] = field(default_factory=list)
    force_focus: bool = False
    require_focus: bool = False

    @property
    def hard_verify(self) -> bool:
        """Explicit expectation or navigation: an unverified result is a failure."""
        return self.expect is not None or self.kind == "navigate"


@dataclass
class BrowserVerifyPlan:
    tool: str
    tab_id: int
    expect: dict


@dataclass
class LocalPlan:
    """Tab enumeration / lifecycle."""
    tool: str
    op: str                     # list / current / create / close
    args: dict = field(default_factory=dict)


ToolPlan = Union[BridgePlan, VirtualFsPlan, BrowserSnapshotPlan, BrowserActionPlan, BrowserVerifyPlan, LocalPlan]


# ── Argument helpers ────────────────────────────────────────────────

def clamp_int_arg(raw: Any, fallback: int, lo: int, hi: int) -> int:
    if raw is None or raw == "":
        return fallback
    try:
        value = int(float(raw))
    except (TypeError, ValueError):
        return fallback
    return max(lo, min(hi, value))


def parse_positive_int(raw: Any) -> Optional[int]:
    try:
        value = int(float(raw))
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def _text_arg(args: dict, key: str) -> str:
    value = args.get(key)
    return value.strip() if isinstance(value, str) else ("" if value is None else str(value).strip())


def is_virtual_path(path: str) -> bool:
    return path.lower().startswith(VIRTUAL_SCHEMES)


def _args_error(message: str, hint: str = "") -> PlanError:
    return PlanError(message, code="E_ARGS", resume_strategy=ResumeStrategy.REPLAN.value, retry_hint=hint)


def _element_target(args: dict, tool: str) -> dict:
    target = {}
    for key in ("uid", "ref"):
        value = _text_arg(args, key)
        if value:
            target[key] = value
    backend_node_id = parse_positive_int(args.get("backendNodeId"))
    if backend_node_id:
        target["backendNodeId"] = backend_node_id
    if not target:
        raise PlanError(
            f"{tool} needs uid, ref or backendNodeId from search_elements",
            code="E_REF_REQUIRED",
            retryable=True,
            resume_strategy=ResumeStrategy.RETRY_WITH_FRESH_SNAPSHOT.value,
            retry_hint="Call search_elements for a fresh uid/ref and retry.",
        )
    selector = _text_arg(args, "selector")
    if selector:
        target["selector"] = selector
    return target


def _coordinate(raw: Any, name: str) -> list[int]:
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        raise _args_error(f"computer needs {name} as [x, y]")
    try:
        return [int(float(raw[0])), int(float(raw[1]))]
    except (TypeError, ValueError):
        raise _args_error(f"computer {name} must be numeric") from None


# ── Planner ─────────────────────────────────────────────────────────

class ToolPlanner:
    """
    Usage:
        planner = ToolPlanner(contracts, active_target=lookup_active_tab)
        plan = await planner.resolve(tool_call, session_id, run_state)
    """

    def __init__(
        self,
        contracts: ToolContractRegistry,
        active_target: Optional[ActiveTargetResolver] = None,
        bash_timeout_ms: int = DEFAULT_BASH_TIMEOUT_MS,
    ):
        self._contracts = contracts
        self._active_target = active_target
        self._bash_timeout_ms = clamp_int_arg(bash_timeout_ms, DEFAULT_BASH_TIMEOUT_MS,
                                              MIN_BASH_TIMEOUT_MS, MAX_BASH_TIMEOUT_MS)
        self._handlers: dict[str, Callable[..., Awaitable[ToolPlan]]] = {
            "bash": self._plan_bash,
            "read_file": self._plan_read,
            "write_file": self._plan_write,
            "edit_file": self._plan_edit,
            "search_elements": self._plan_search,
            "click": self._plan_element_action,
            "fill_element_by_uid": self._plan_element_action,
            "select_option_by_uid": self._plan_element_action,
            "hover_element_by_uid": self._plan_element_action,
            "get_element_value": self._plan_element_action,
            "press_key": self._plan_press,
            "scroll_page": self._plan_scroll,
            "navigate_tab": self._plan_navigate,
            "fill_form": self._plan_fill_form,
            "computer": self._plan_computer,
            "capture_screenshot": self._plan_screenshot,
            "browser_verify": self._plan_verify,
            "get_all_tabs": self._plan_tabs,
            "get_current_tab": self._plan_tabs,
            "create_new_tab": self._plan_tabs,
            "close_tab": self._plan_tabs,
        }

    @property
    def supported_tools(self) -> list[str]:
        return sorted(self._handlers)

    async def resolve(self, call: ToolCall, session_id: str, state: Optional["RunState"] = None) -> ToolPlan:
        try:
            args = call.parsed_arguments()
        except ValueError as e:
            raise PlanError(
                f"Failed to parse arguments for {call.name}: {e}",
                code="E_ARGS_PARSE",
                resume_strategy=ResumeStrategy.REPLAN.value,
                retry_hint="Send the tool arguments as one valid JSON object.",
            ) from e

        contract = self._contracts.resolve(call.name)
        if contract is None:
            raise PlanError(
                f"Unknown tool: {call.name}",
                code="E_UNKNOWN_TOOL",
                resume_strategy=ResumeStrategy.REPLAN.value,
                retry_hint="Use one of the supported tools.",
                supported_tools=self.supported_tools,
            )
        handler = self._handlers.get(contract.name)
        if handler is None:
            raise PlanError(
                f"Tool has no execution backend: {contract.name}",
                code="E_TOOL_UNSUPPORTED",
                resume_strategy=ResumeStrategy.REPLAN.value,
                retry_hint="Use one of the supported tools.",
                supported_tools=self.supported_tools,
            )
        return await handler(contract.name, args, session_id, state)

    # ── Target resolution ──

    async def resolve_target(self, args: dict, session_id: str, state: Optional["RunState"]) -> int:
        tab_id = parse_positive_int(args.get("tabId"))
        source = "explicit"
        if tab_id is None and state is not None and state.last_target_id:
            tab_id, source = state.last_target_id, "last"
        if tab_id is None and state is not None:
            shared = [t for t in (parse_positive_int(x) for x in state.shared_target_ids) if t]
            if shared:
                tab_id, source = shared[0], "shared"
        if tab_id is None and self._active_target is not None:
            tab_id, source = parse_positive_int(await self._active_target(session_id)), "active"
        if tab_id is None:
            raise PlanError(
                "No target tab available",
                code="E_NO_TAB",
                retryable=True,
                resume_strategy=ResumeStrategy.RETRY_WITH_FRESH_SNAPSHOT.value,
                retry_hint="Call get_all_tabs and retry with a valid tabId.",
            )
        if state is not None:
            state.last_target_id = tab_id
        logger.debug(f"Target tab {tab_id} resolved from {source}")
        return tab_id

    # ── Bridge / virtual fs ──

    @staticmethod
    def _runtime(args: dict, path: str = "") -> str:
        if path and is_virtual_path(path):
            return "browser"
        hint = _text_arg(args, "runtime").lower()
        return "browser" if hint == "browser" else "local"

    async def _plan_bash(self, tool, args, session_id, state) -> ToolPlan:
        command = _text_arg(args, "command")
        if not command:
            raise _args_error("bash needs command")
        if self._runtime(args) == "browser":
            raise PlanError(
                "bash runtime=browser is not available",
                code="E_TOOL_UNSUPPORTED",
                resume_strategy=ResumeStrategy.REPLAN.value,
                retry_hint="Retry with runtime=local, or use the file tools on mem:// paths.",
                supported_tools=self.supported_tools,
            )
        timeout_ms = clamp_int_arg(args.get("timeoutMs"), self._bash_timeout_ms,
                                   MIN_BASH_TIMEOUT_MS, MAX_BASH_TIMEOUT_MS)
        frame = {"tool": "bash", "args": {"cmdId": "bash.exec", "args": [command], "timeoutMs": timeout_ms}}
        return BridgePlan(tool, "process.exec", frame)

    async def _plan_read(self, tool, args, session_id, state) -> ToolPlan:
        path = _text_arg(args, "path")
        if not path:
            raise _args_error("read_file needs path")
        op_args: dict = {"path": path}
        if args.get("offset") is not None:
            op_args["offset"] = clamp_int_arg(args["offset"], 0, 0, 2**31 - 1)
        if args.get("limit") is not None:
            op_args["limit"] = clamp_int_arg(args["limit"], 0, 0, 2**31 - 1)
        if self._runtime(args, path) == "browser":
            return VirtualFsPlan(tool, "fs.read", "read", op_args)
        return BridgePlan(tool, "fs.read", {"tool": "read", "args": op_args})

    async def _plan_write(self, tool, args, session_id, state) -> ToolPlan:
        path = _text_arg(args, "path")
        if not path:
            raise _args_error("write_file needs path")
        mode = _text_arg(args, "mode").lower() or "overwrite"
        if mode not in WRITE_MODES:
            raise _args_error(f"write_file mode must be one of {', '.join(WRITE_MODES)}")
        content = args.get("content")
        op_args = {"path": path, "content": "" if content is None else str(content), "mode": mode}
        if self._runtime(args, path) == "browser":
            return VirtualFsPlan(tool, "fs.write", "write", op_args)
        return BridgePlan(tool, "fs.write", {"tool": "write", "args": op_args})

    async def _plan_edit(self, tool, args, session_id, state) -> ToolPlan:
        path = _text_arg(args, "path")
        if not path:
            raise _args_error("edit_file needs path")
        edits = args.get("edits")
        if not isinstance(edits, list) or not edits:
            raise _args_error("edit_file needs a non-empty edits list")
        normalized = []
        for i, edit in enumerate(edits):
            if not isinstance(edit, dict) or not isinstance(edit.get("old"), str) or "new" not in edit:
                raise _args_error(f"edit_file edits[{i}] needs old and new strings")
            normalized.append({"old": edit["old"], "new": str(edit["new"]), "all": edit.get("all") is True})
        op_args = {"path": path, "edits": normalized}
        if self._runtime(args, path) == "browser":
            return VirtualFsPlan(tool, "fs.edit", "edit", op_args)
        return BridgePlan(tool, "fs.edit", {"tool": "edit", "args": op_args})

    # ── Browser ──

    async def _plan_search(self, tool, args, session_id, state) -> ToolPlan:
        tab_id = await self.resolve_target(args, session_id, state)
        options = {"mode": "interactive", "filter": "interactive"}
        selector = _text_arg(args, "selector")
        if selector:
            options["selector"] = selector
        for key in ("maxTokens", "depth"):
            if args.get(key) is not None:
                options[key] = clamp_int_arg(args[key], 0, 0, 1_000_000)
        if args.get("noAnimations") is True:
            options["noAnimations"] = True
        return BrowserSnapshotPlan(
            tool, tab_id, "snapshot", options,
            query=_text_arg(args, "query"),
            max_results=clamp_int_arg(args.get("maxResults"), DEFAULT_SEARCH_RESULTS, 1, MAX_SEARCH_RESULTS),
        )

    async def _plan_element_action(self, tool, args, session_id, state) -> ToolPlan:
        target = _element_target(args, tool)
        kind = {
            "click": "click",
            "fill_element_by_uid": "fill",
            "select_option_by_uid": "select",
            "hover_element_by_uid": "hover",
            "get_element_value": "read_value",
        }[tool]
        action = {"kind": kind, **target}
        if kind in ("fill", "select"):
            if args.get("value") is None:
                raise _args_error(f"{tool} needs value")
            action["value"] = str(args["value"])
        tab_id = await self.resolve_target(args, session_id, state)
        return self._action_plan(tool, tab_id, kind, action, args)

    async def _plan_press(self, tool, args, session_id, state) -> ToolPlan:
        key = _text_arg(args, "key")
        if not key:
            raise _args_error("press_key needs key")
        tab_id = await self.resolve_target(args, session_id, state)
        return self._action_plan(tool, tab_id, "press", {"kind": "press", "key": key}, args)

    async def _plan_scroll(self, tool, args, session_id, state) -> ToolPlan:
        delta = clamp_int_arg(args.get("deltaY"), DEFAULT_SCROLL_DELTA, -MAX_SCROLL_DELTA, MAX_SCROLL_DELTA)
        tab_id = await self.resolve_target(args, session_id, state)
        return self._action_plan(tool, tab_id, "scroll", {"kind": "scroll", "deltaY": delta}, args)

    async def _plan_navigate(self, tool, args, session_id, state) -> ToolPlan:
        url = _text_arg(args, "url")
        if not url:
            raise _args_error("navigate_tab needs url")
        tab_id = await self.resolve_target(args, session_id, state)
        return self._action_plan(tool, tab_id, "navigate", {"kind": "navigate", "url": url}, args)

    async def _plan_fill_form(self, tool, args, session_id, state) -> ToolPlan:
        elements = args.get("elements")
        if not isinstance(elements, list) or not elements:
            raise _args_error("fill_form needs a non-empty elements list")
        steps = []
        for i, element in enumerate(elements):
            if not isinstance(element, dict) or element.get("value") is None:
                raise _args_error(f"fill_form elements[{i}] needs value")
            steps.append({"kind": "fill", **_element_target(element, tool), "value": str(element["value"])})

        submit = args.get("submit")
        if isinstance(submit, dict) and submit:
            kind = _text_arg(submit, "kind").lower() or "click"
            if kind == "press":
                steps.append({"kind": "press", "key": _text_arg(submit, "key") or "Enter"})
            elif kind == "click":
                steps.append({"kind": "click", **_element_target(submit, tool)})
            else:
                raise _args_error("fill_form submit.kind must be click or press")

        tab_id = await self.resolve_target(args, session_id, state)
        plan = self._action_plan(tool, tab_id, "fill", {"kind": "fill_form"}, args)
        plan.steps = steps
        return plan

    async def _plan_computer(self, tool, args, session_id, state) -> ToolPlan:
        name = _text_arg(args, "action").lower()
        if name not in COMPUTER_ACTION_KINDS:
            raise _args_error(f"computer action must be one of {', '.join(COMPUTER_ACTION_KINDS)}")
        action: dict = {"kind": COMPUTER_ACTION_KINDS[name], "computerAction": name}
        if name in _COORDINATE_ACTIONS:
            action["coordinate"] = _coordinate(args.get("coordinate"), "coordinate")
        if name == "left_click_drag":
            action["startCoordinate"] = _coordinate(args.get("startCoordinate"), "startCoordinate")
        if name in ("type", "key"):
            text = args.get("text")
            if not isinstance(text, str) or not text:
                raise _args_error(f"computer {name} needs text")
            action["text"] = text
        if name == "scroll":
            if args.get("coordinate") is not None:
                action["coordinate"] = _coordinate(args["coordinate"], "coordinate")
            direction = _text_arg(args, "scrollDirection").lower() or "down"
            if direction not in ("up", "down", "left", "right"):
                raise _args_error("computer scrollDirection must be up, down, left or right")
            action["scrollDirection"] = direction
            action["scrollAmount"] = clamp_int_arg(args.get("scrollAmount"), 3, 1, 100)
        if name == "wait":
            action["durationMs"] = clamp_int_arg(args.get("durationMs"), 1000, 0, MAX_WAIT_MS)
        tab_id = await self.resolve_target(args, session_id, state)
        return self._action_plan(tool, tab_id, action["kind"], action, args)

    async def _plan_screenshot(self, tool, args, session_id, state) -> ToolPlan:
        tab_id = await self.resolve_target(args, session_id, state)
        fmt = _text_arg(args, "format").lower() or "png"
        if fmt not in ("png", "jpeg"):
            raise _args_error("capture_screenshot format must be png or jpeg")
        options: dict = {"format": fmt}
        if fmt == "jpeg":
            options["quality"] = clamp_int_arg(args.get("quality"), 80, 1, 100)
        return BrowserSnapshotPlan(tool, tab_id, "screenshot", options)

    async def _plan_verify(self, tool, args, session_id, state) -> ToolPlan:
        tab_id = await self.resolve_target(args, session_id, state)
        raw = args.get("expect") if isinstance(args.get("expect"), dict) else args
        return BrowserVerifyPlan(tool, tab_id, normalize_verify_expect(raw) or {})

    async def _plan_tabs(self, tool, args, session_id, state) -> ToolPlan:
        if tool == "get_all_tabs":
            return LocalPlan(tool, "list")
        if tool == "get_current_tab":
            return LocalPlan(tool, "current")
        if tool == "create_new_tab":
            url = _text_arg(args, "url")
            if not url:
                raise _args_error("create_new_tab needs url")
            return LocalPlan(tool, "create", {"url": url, "active": args.get("active") is not False})
        tab_id = parse_positive_int(args.get("tabId"))
        if tab_id is None:
            raise _args_error("close_tab needs tabId")
        return LocalPlan(tool, "close", {"tabId": tab_id})

    @staticmethod
    def _action_plan(tool: str, tab_id: int, kind: str, action: dict, args: dict) -> BrowserActionPlan:
        return BrowserActionPlan(
            tool=tool,
            tab_id=tab_id,
            kind=kind,
            action=action,
            expect=normalize_verify_expect(args.get("expect")),
            force_focus=args.get("forceFocus") is True,
            require_focus=args.get("requireFocus") is True,
        )
