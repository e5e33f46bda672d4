"""
Tool Contracts — the tool schemas offered to the model.

Built-in contracts can be overridden or extended at runtime.  Name
resolution order: override by name, builtin by name, override alias,
builtin alias.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class ToolContract:
    """Name, description and JSON-Schema parameters of one tool."""
    name: str
    description: str
    parameters: dict
    aliases: list[str] = field(default_factory=list)

    def copy(self) -> "ToolContract":
        return ToolContract(
            name=self.name,
            description=self.description,
            parameters=copy.deepcopy(self.parameters),
            aliases=list(self.aliases),
        )


@dataclass
class ToolContractView:
    name: str
    description: str
    aliases: list[str]
    source: str    # builtin / override


# ── Built-in contracts ──────────────────────────────────────────────

_RUNTIME_HINT = {
    "type": "string",
    "enum": ["browser", "local"],
    "description": "Optional runtime hint. Prefer matching the path semantics.",
}
_TAB_ID = {"type": "number", "description": "Target tab id."}
_EXPECT = {"type": "object", "description": "Optional post-action verification expectation."}
_FOCUS_PROPS = {
    "requireFocus": {"type": "boolean", "description": "Require focused tab before action."},
    "forceFocus": {"type": "boolean", "description": "Auto-focus tab before action."},
}
_ELEMENT_PROPS = {
    "uid": {"type": "string", "description": "Element uid from search_elements."},
    "ref": {"type": "string", "description": "Stable ref from search_elements."},
    "backendNodeId": {"type": "number", "description": "Stable backend node id."},
    "selector": {"type": "string", "description": "Fallback selector only. Prefer uid/ref/backendNodeId."},
}
_ELEMENT_ANY_OF = [{"required": ["uid"]}, {"required": ["ref"]}, {"required": ["backendNodeId"]}]


def _object(properties: dict, required: Optional[list[str]] = None, **extra) -> dict:
    schema = {"type": "object", "properties": properties, "required": required or []}
    schema.update(extra)
    return schema


def _element_action(extra_props: Optional[dict] = None, required: Optional[list[str]] = None) -> dict:
    props = {"tabId": _TAB_ID, **_ELEMENT_PROPS, **(extra_props or {}), "expect": _EXPECT, **_FOCUS_PROPS}
    return _object(props, required, anyOf=copy.deepcopy(_ELEMENT_ANY_OF))


def _page_action(extra_props: dict, required: Optional[list[str]] = None) -> dict:
    return _object({"tabId": _TAB_ID, **extra_props, "expect": _EXPECT, **_FOCUS_PROPS}, required)


DEFAULT_TOOL_CONTRACTS: list[ToolContract] = [
    ToolContract(
        "bash",
        "Execute a shell command. Use runtime=browser for the virtual runtime, runtime=local for the local shell.",
        _object({
            "command": {"type": "string"},
            "runtime": {**_RUNTIME_HINT, "description": "Optional runtime hint for command execution backend."},
            "timeoutMs": {
                "type": "number",
                "description": "Optional command timeout in milliseconds. For long tasks, increase this value.",
            },
        }, ["command"]),
        aliases=["shell"],
    ),
    ToolContract(
        "read_file",
        "Read a file's content. mem:// or vfs:// paths target virtual files; regular paths target local files.",
        _object({
            "path": {"type": "string"},
            "runtime": _RUNTIME_HINT,
            "offset": {"type": "number"},
            "limit": {"type": "number"},
        }, ["path"]),
        aliases=["read"],
    ),
    ToolContract(
        "write_file",
        "Write content to a file. mem:// or vfs:// paths target virtual files; regular paths target local files.",
        _object({
            "path": {"type": "string"},
            "runtime": _RUNTIME_HINT,
            "content": {"type": "string"},
            "mode": {"type": "string", "enum": ["overwrite", "append", "create"]},
        }, ["path", "content"]),
        aliases=["write"],
    ),
    ToolContract(
        "edit_file",
        "Apply edits to a file. mem:// or vfs:// paths target virtual files; regular paths target local files.",
        _object({
            "path": {"type": "string"},
            "runtime": _RUNTIME_HINT,
            "edits": {
                "type": "array",
                "items": _object({
                    "old": {"type": "string"},
                    "new": {"type": "string"},
                    "all": {"type": "boolean"},
                }, ["old", "new"]),
            },
        }, ["path", "edits"]),
        aliases=["edit"],
    ),
    ToolContract(
        "search_elements",
        "Search interactive elements from an accessibility snapshot and return uid/ref/backendNodeId "
        "targets for follow-up actions. Prefer user-visible semantic query words "
        "(placeholder/aria/name/visible text) instead of implementation-only selectors.",
        _object({
            "tabId": _TAB_ID,
            "query": {"type": "string", "description": "User-visible semantic query (e.g. search, like, submit, email)."},
            "selector": {"type": "string", "description": "Optional scope selector to narrow search region."},
            "maxResults": {"type": "number", "description": "Max matched nodes to return (default 20)."},
            "maxTokens": {"type": "number", "description": "Snapshot token budget hint."},
            "depth": {"type": "number", "description": "DOM/a11y traversal depth hint."},
            "noAnimations": {"type": "boolean", "description": "Disable animations during snapshot for stability."},
        }),
        aliases=["snapshot"],
    ),
    ToolContract(
        "click",
        "Click an element by uid/ref/backendNodeId from search_elements. Prefer fresh uid/ref targets. "
        "Add expect when this click should cause a state change.",
        _element_action(),
    ),
    ToolContract(
        "fill_element_by_uid",
        "Fill/type into an element by uid/ref/backendNodeId from search_elements. "
        "Works for input/textarea/contenteditable editors.",
        _element_action({"value": {"type": "string", "description": "Value/text to fill."}}, ["value"]),
    ),
    ToolContract(
        "select_option_by_uid",
        "Select/set value for a selectable element by uid/ref/backendNodeId from search_elements.",
        _element_action({"value": {"type": "string", "description": "Option value to set."}}, ["value"]),
    ),
    ToolContract(
        "hover_element_by_uid",
        "Hover over an element by uid/ref/backendNodeId from search_elements.",
        _element_action(),
    ),
    ToolContract(
        "get_element_value",
        "Read the current value/text of an element by uid/ref/backendNodeId from search_elements.",
        _object({"tabId": _TAB_ID, **_ELEMENT_PROPS}, anyOf=copy.deepcopy(_ELEMENT_ANY_OF)),
    ),
    ToolContract(
        "press_key",
        "Send a keyboard key to the active element on a tab (e.g. Enter, Escape, ArrowDown).",
        _page_action({"key": {"type": "string", "description": "Key name to press."}}, ["key"]),
    ),
    ToolContract(
        "scroll_page",
        "Scroll current page by deltaY pixels. Positive moves down, negative moves up.",
        _page_action({"deltaY": {"type": "number", "description": "Pixels to scroll (default 600)."}}),
    ),
    ToolContract(
        "navigate_tab",
        "Navigate a tab to the given URL. Use expect to verify destination when needed.",
        _page_action({"url": {"type": "string", "description": "Destination URL."}}, ["url"]),
    ),
    ToolContract(
        "fill_form",
        "Fill multiple form fields in one step using uid/ref/backendNodeId from search_elements.",
        _object({
            "tabId": {"type": "number"},
            "elements": {
                "type": "array",
                "items": _object({
                    "uid": {"type": "string"},
                    "ref": {"type": "string"},
                    "backendNodeId": {"type": "number"},
                    "selector": {"type": "string"},
                    "value": {"type": "string"},
                }, ["value"]),
            },
            "submit": _object({
                "kind": {"type": "string", "enum": ["click", "press"]},
                "uid": {"type": "string"},
                "ref": {"type": "string"},
                "selector": {"type": "string"},
                "key": {"type": "string"},
            }),
            "expect": {"type": "object"},
            **_FOCUS_PROPS,
        }, ["elements"]),
    ),
    ToolContract(
        "computer",
        "Low-level viewport input by coordinates: mouse_move, left_click, right_click, double_click, "
        "left_click_drag, scroll, type, key, wait.",
        _page_action({
            "action": {
                "type": "string",
                "enum": [
                    "mouse_move", "left_click", "right_click", "double_click",
                    "left_click_drag", "scroll", "type", "key", "wait",
                ],
            },
            "coordinate": {"type": "array", "items": {"type": "number"}},
            "startCoordinate": {"type": "array", "items": {"type": "number"}},
            "text": {"type": "string"},
            "scrollDirection": {"type": "string", "enum": ["up", "down", "left", "right"]},
            "scrollAmount": {"type": "number"},
            "durationMs": {"type": "number"},
        }, ["action"]),
    ),
    ToolContract(
        "capture_screenshot",
        "Capture a screenshot of a tab's visible viewport.",
        _object({
            "tabId": _TAB_ID,
            "format": {"type": "string", "enum": ["png", "jpeg"]},
            "quality": {"type": "number"},
        }),
    ),
    ToolContract(
        "browser_verify",
        "Verify current browser state after action. Provide a non-empty expect object "
        "(url/title/text/selector checks) for deterministic validation.",
        _object({"tabId": {"type": "number"}, "expect": {"type": "object"}}),
    ),
    ToolContract(
        "get_all_tabs",
        "Get all open tabs across all windows with metadata",
        _object({}),
        aliases=["list_tabs"],
    ),
    ToolContract(
        "get_current_tab",
        "Get information about the currently active tab",
        _object({}),
    ),
    ToolContract(
        "create_new_tab",
        "Create a new browser tab with the provided URL",
        _object({"url": {"type": "string"}, "active": {"type": "boolean"}}, ["url"]),
        aliases=["open_tab"],
    ),
    ToolContract(
        "close_tab",
        "Close a browser tab by id",
        _object({"tabId": _TAB_ID}, ["tabId"]),
    ),
]

_COMBINATOR_KEYS = ("oneOf", "anyOf", "allOf", "enum", "not")


def strip_schema_combinators(parameters: dict) -> dict:
    """Drop top-level combinators that some providers reject."""
    out = copy.deepcopy(parameters)
    for key in _COMBINATOR_KEYS:
        out.pop(key, None)
    return out


def _validate(contract: ToolContract) -> ToolContract:
    name = str(contract.name or "").strip()
    if not name:
        raise ValueError("tool contract name must not be empty")
    description = str(contract.description or "").strip()
    if not description:
        raise ValueError(f"tool contract description must not be empty: {name}")
    if not isinstance(contract.parameters, dict):
        raise ValueError(f"tool contract parameters must be an object: {name}")

    aliases: list[str] = []
    for alias in contract.aliases or []:
        alias = str(alias or "").strip()
        if alias and alias != name and alias not in aliases:
            aliases.append(alias)
    return ToolContract(name, description, copy.deepcopy(contract.parameters), aliases)


# ── Registry ────────────────────────────────────────────────────────

class ToolContractRegistry:
    """Built-in contracts plus runtime overrides."""

    def __init__(self, default_contracts: Optional[list[ToolContract]] = None):
        self._builtins: dict[str, ToolContract] = {}
        self._overrides: dict[str, ToolContract] = {}
        self._builtin_alias: dict[str, str] = {}
        self._override_alias: dict[str, str] = {}

        for contract in DEFAULT_TOOL_CONTRACTS if default_contracts is None else default_contracts:
            normalized = _validate(contract)
            self._builtins[normalized.name] = normalized
            for alias in normalized.aliases:
                self._builtin_alias[alias] = normalized.name

    def register(self, contract: ToolContract, replace: bool = False) -> None:
        normalized = _validate(contract)
        exists = normalized.name in self._overrides or normalized.name in self._builtins
        if exists and not replace:
            raise ValueError(f"tool contract already registered: {normalized.name}")

        previous = self._overrides.get(normalized.name)
        if previous:
            for alias in previous.aliases:
                self._override_alias.pop(alias, None)
        self._overrides[normalized.name] = normalized
        for alias in normalized.aliases:
            self._override_alias[alias] = normalized.name

    def unregister(self, name: str) -> bool:
        """Remove an override; built-ins cannot be removed."""
        previous = self._overrides.pop(str(name or "").strip(), None)
        if previous is None:
            return False
        for alias in previous.aliases:
            self._override_alias.pop(alias, None)
        return True

    def resolve(self, name_or_alias: str) -> Optional[ToolContract]:
        key = str(name_or_alias or "").strip()
        if not key:
            return None
        if key in self._overrides:
            return self._overrides[key].copy()
        if key in self._builtins:
            return self._builtins[key].copy()

        override_name = self._override_alias.get(key)
        if override_name and override_name in self._overrides:
            return self._overrides[override_name].copy()
        builtin_name = self._builtin_alias.get(key)
        if builtin_name:
            contract = self._overrides.get(builtin_name) or self._builtins.get(builtin_name)
            if contract:
                return contract.copy()
        return None

    def list_contracts(self) -> list[ToolContractView]:
        out: list[ToolContractView] = []
        for name, builtin in self._builtins.items():
            resolved = self._overrides.get(name) or builtin
            source = "override" if name in self._overrides else "builtin"
            out.append(ToolContractView(resolved.name, resolved.description, list(resolved.aliases), source))
        for name, override in self._overrides.items():
            if name in self._builtins:
                continue
            out.append(ToolContractView(override.name, override.description, list(override.aliases), "override"))
        return out

    def list_names(self) -> list[str]:
        return [view.name for view in self.list_contracts()]

    def list_llm_tool_definitions(
        self,
        include_aliases: bool = True,
        strip_combinators: bool = False,
    ) -> list[dict]:
        """Chat-completions ``tools`` entries, aliases included by default."""
        out: list[dict] = []
        seen: set[str] = set()

        def push(name: str, description: str, parameters: dict) -> None:
            if not name or name in seen:
                return
            seen.add(name)
            params = strip_schema_combinators(parameters) if strip_combinators else copy.deepcopy(parameters)
            out.append({
                "type": "function",
                "function": {"name": name, "description": description, "parameters": params},
            })

        for view in self.list_contracts():
            resolved = self.resolve(view.name)
            if resolved is None:
                continue
            push(resolved.name, resolved.description, resolved.parameters)
            if include_aliases:
                for alias in resolved.aliases:
                    push(alias, resolved.description, resolved.parameters)
        return out
