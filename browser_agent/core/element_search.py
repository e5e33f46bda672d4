"""
Element search ranking over snapshot nodes.

Each candidate node is scored per whitespace-split query token:

    name / placeholder / aria-label   exact 42, prefix 24, substring 16
    selector                          substring 12
    role / tag                        exact 16, substring 8
    value                             substring 6
    any other attribute               substring 3

Interactive nodes get a bonus and disabled nodes a heavy penalty.  Queries
with typing intent ("input", "text", "fill", ...) favour editable nodes and
push labels, containers and buttons down.

Ranking key: nodes matching every token first, then score, then original
snapshot order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional

DEFAULT_MAX_RESULTS = 20
MAX_RESULTS_LIMIT = 200

INTERACTIVE_BONUS = 10
DISABLED_PENALTY = 60
TYPING_EDITABLE_BONUS = 30
TYPING_NON_EDITABLE_PENALTY = 20

INTERACTIVE_ROLES = frozenset({
    "button", "link", "textbox", "searchbox", "combobox", "listbox", "option",
    "checkbox", "radio", "switch", "slider", "spinbutton", "menuitem",
    "menuitemcheckbox", "menuitemradio", "tab", "treeitem",
})
INTERACTIVE_TAGS = frozenset({"a", "button", "input", "textarea", "select", "option", "summary"})
TYPABLE_ROLES = frozenset({"textbox", "searchbox", "combobox"})
LABEL_LIKE = frozenset({"label", "div", "span", "section", "form", "fieldset", "group", "generic", "statictext"})
NON_TYPABLE_INPUT_TYPES = frozenset({"button", "submit", "reset", "checkbox", "radio", "file", "image", "hidden"})

TYPING_INTENT_TOKENS = frozenset({
    "input", "text", "textbox", "textarea", "type", "fill", "compose",
    "write", "editor", "reply", "comment", "message",
})

_NAME_FIELDS = ("name", "placeholder", "ariaLabel")


@dataclass
class RankedElement:
    node: dict
    score: int
    full_match: bool
    order: int

    def to_dict(self) -> dict:
        return {**self.node, "score": self.score, "fullMatch": self.full_match}


def tokenize_query(query: Any) -> list[str]:
    return [t for t in str(query or "").lower().split() if t]


def has_typing_intent(tokens: Iterable[str]) -> bool:
    return any(t in TYPING_INTENT_TOKENS for t in tokens)


def _text(node: dict, key: str) -> str:
    value = node.get(key)
    if value is None and key == "ariaLabel":
        value = node.get("aria-label") or node.get("aria_label")
    return str(value or "").strip().lower()


def _role(node: dict) -> str:
    return _text(node, "role")


def _tag(node: dict) -> str:
    return _text(node, "tag") or _text(node, "tagName")


def is_interactive(node: dict) -> bool:
    return _role(node) in INTERACTIVE_ROLES or _tag(node) in INTERACTIVE_TAGS or bool(node.get("focusable"))


def is_editable(node: dict) -> bool:
    if node.get("editable") or node.get("contentEditable") or node.get("contenteditable"):
        return True
    tag = _tag(node)
    if tag == "textarea":
        return True
    if tag == "input":
        return _text(node, "type") not in NON_TYPABLE_INPUT_TYPES
    return _role(node) in TYPABLE_ROLES


def _other_attributes(node: dict) -> list[str]:
    attrs = node.get("attributes")
    values: list[str] = []
    if isinstance(attrs, dict):
        values.extend(str(v).lower() for v in attrs.values() if v is not None)
    for key in ("text", "title", "id", "href", "type"):
        if node.get(key) is not None:
            values.append(str(node[key]).lower())
    return values


def _token_score(node: dict, token: str) -> int:
    score = 0
    for field_name in _NAME_FIELDS:
        text = _text(node, field_name)
        if not text:
            continue
        if text == token:
            score += 42
        elif text.startswith(token):
            score += 24
        elif token in text:
            score += 16

    selector = _text(node, "selector")
    if selector and token in selector:
        score += 12

    for kind in (_role(node), _tag(node)):
        if not kind:
            continue
        if kind == token:
            score += 16
        elif token in kind:
            score += 8

    value = _text(node, "value")
    if value and token in value:
        score += 6

    if score == 0 and any(token in attr for attr in _other_attributes(node)):
        score += 3
    return score


def score_node(node: dict, tokens: list[str], typing_intent: bool = False) -> tuple[int, int]:
    """Return ``(score, matched_token_count)`` for one node."""
    total = 0
    matched = 0
    for token in tokens:
        points = _token_score(node, token)
        if points > 0:
            matched += 1
        total += points

    if is_interactive(node):
        total += INTERACTIVE_BONUS
    if node.get("disabled"):
        total -= DISABLED_PENALTY

    if typing_intent:
        role, tag = _role(node), _tag(node)
        if is_editable(node):
            total += TYPING_EDITABLE_BONUS
        elif role in LABEL_LIKE or tag in LABEL_LIKE or role == "button" or tag == "button":
            total -= TYPING_NON_EDITABLE_PENALTY

    return total, matched


def rank_elements(
    nodes: Iterable[dict],
    query: Any,
    max_results: Optional[int] = None,
) -> list[RankedElement]:
    """Rank snapshot nodes for ``query``; an empty query keeps snapshot order."""
    tokens = tokenize_query(query)
    typing = has_typing_intent(tokens)
    limit = DEFAULT_MAX_RESULTS if max_results is None else max(1, min(MAX_RESULTS_LIMIT, int(max_results)))

    ranked: list[RankedElement] = []
    for order, node in enumerate(nodes):
        if not isinstance(node, dict):
            continue
        score, matched = score_node(node, tokens, typing)
        if tokens and matched == 0:
            continue
        full = bool(tokens) and matched == len(tokens)
        ranked.append(RankedElement(node=node, score=score, full_match=full, order=order))

    if tokens:
        ranked.sort(key=lambda r: (not r.full_match, -r.score, r.order))
    return ranked[:limit]
