"""
Post-action verification helpers.

Two kinds of check:
  - explicit: the caller's ``expect`` (urlContains, titleContains,
    textIncludes, selectorExists, urlChanged) asserted by the
    ``browser.verify`` provider against a fresh observation
  - generic progress: url / title / text length / node count compared
    before and after the action; any one differing counts as progress
"""

from __future__ import annotations

from typing import Any, Optional

from .capabilities import VERIFY_ALWAYS, VERIFY_OFF

VERIFIED = "verified"
VERIFY_FAILED = "verify_failed"
VERIFY_SKIPPED = "verify_skipped"
VERIFY_POLICY_OFF = "verify_policy_off"
VERIFY_NOT_SUPPORTED_FOR_BRIDGE = "verify_not_supported_for_bridge"
VERIFY_MISSING_TAB_ID = "verify_missing_tab_id"

# Action kinds that take a lease and count as critical for verification.
LEASE_KINDS = frozenset({"click", "type", "fill", "press", "scroll", "select", "navigate", "hover"})
CRITICAL_KINDS = LEASE_KINDS | {"action", "browser_action"}

_STRING_EXPECT_KEYS = ("urlContains", "titleContains", "textIncludes", "selectorExists", "previousUrl")


def normalize_verify_expect(raw: Any) -> Optional[dict]:
    """Keep only recognized, non-empty expectation keys; None when nothing is left."""
    if not isinstance(raw, dict):
        return None
    out: dict = {}
    for key in _STRING_EXPECT_KEYS:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            out[key] = value.strip()
    if raw.get("urlChanged") is True:
        out["urlChanged"] = True
    return out or None


def should_verify(kind: str, verify_policy: Optional[str]) -> bool:
    policy = str(verify_policy or "on_critical")
    if policy == VERIFY_OFF:
        return False
    if policy == VERIFY_ALWAYS:
        return True
    return str(kind or "").strip().lower() in CRITICAL_KINDS


def requires_lease(kind: str, lease_policy: Optional[str] = "auto") -> bool:
    """``auto`` uses the kind set; ``required`` / ``none`` override it."""
    if lease_policy == "required":
        return True
    if lease_policy == "none":
        return False
    return str(kind or "").strip().lower() in LEASE_KINDS


def _page(observation: Any) -> dict:
    if isinstance(observation, dict) and isinstance(observation.get("page"), dict):
        return observation["page"]
    return {}


def _num(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def build_observe_progress_verify(before: Any, after: Any) -> dict:
    before_page, after_page = _page(before), _page(after)
    checks = []
    for name, key in (("urlChanged", "url"), ("titleChanged", "title")):
        b, a = str(before_page.get(key) or ""), str(after_page.get(key) or "")
        checks.append({"name": name, "pass": b != a, "before": b, "after": a})
    for name, key in (("textLengthChanged", "textLength"), ("nodeCountChanged", "nodeCount")):
        b, a = _num(before_page.get(key)), _num(after_page.get(key))
        checks.append({"name": name, "pass": b != a, "before": b, "after": a})
    return {
        "ok": any(c["pass"] for c in checks),
        "checks": checks,
        "observation": after,
    }


def observed_url(observation: Any) -> str:
    return str(_page(observation).get("url") or "")
