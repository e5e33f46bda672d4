"""
Planning tests.

Covers:
  - Tool contract resolution, overrides, aliases and LLM definitions
  - Planner argument validation, clamping and runtime routing
  - Tab target priority: explicit, last used, shared, active
  - Element ranking and typing intent
  - Verification helpers
  - No-progress detection (repeat and ping-pong)
"""

from __future__ import annotations

import asyncio
import os
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from browser_agent.core.element_search import rank_elements, tokenize_query
from browser_agent.core.errors import PlanError
from browser_agent.core.models import ToolCall
from browser_agent.core.no_progress import (
    TRIGGER_PING_PONG,
    TRIGGER_REPEAT_SIGNATURE,
    NoProgressDetector,
    tool_signature,
)
from browser_agent.core.orchestrator import RunState
from browser_agent.core.planner import (
    BridgePlan,
    BrowserActionPlan,
    BrowserSnapshotPlan,
    BrowserVerifyPlan,
    LocalPlan,
    ToolPlanner,
    VirtualFsPlan,
)
from browser_agent.core.tool_contracts import ToolContract, ToolContractRegistry, strip_schema_combinators
from browser_agent.core.verification import (
    build_observe_progress_verify,
    normalize_verify_expect,
    requires_lease,
    should_verify,
)


def _run(coro):
    return asyncio.run(coro)


def _call(name, arguments="{}"):
    return ToolCall(id="c1", name=name, arguments_json=arguments)


# ═══════════════════════════════════════════════════════════════════
#  Tool contracts
# ═══════════════════════════════════════════════════════════════════

class TestToolContracts(unittest.TestCase):

    def test_builtin_and_alias(self):
        registry = ToolContractRegistry()
        self.assertEqual(registry.resolve("bash").name, "bash")
        self.assertEqual(registry.resolve("shell").name, "bash")
        self.assertIsNone(registry.resolve("nope"))
        self.assertIsNone(registry.resolve(""))

    def test_override_wins_and_unregister_restores(self):
        registry = ToolContractRegistry()
        registry.register(ToolContract("bash", "custom bash", {"type": "object"}), replace=True)
        self.assertEqual(registry.resolve("bash").description, "custom bash")
        self.assertEqual(registry.resolve("shell").description, "custom bash")
        self.assertTrue(registry.unregister("bash"))
        self.assertNotEqual(registry.resolve("bash").description, "custom bash")
        self.assertFalse(registry.unregister("bash"))

    def test_duplicate_requires_replace(self):
        registry = ToolContractRegistry()
        with self.assertRaises(ValueError):
            registry.register(ToolContract("bash", "x", {}))

    def test_validation(self):
        with self.assertRaises(ValueError):
            ToolContractRegistry().register(ToolContract(" ", "x", {}))
        with self.assertRaises(ValueError):
            ToolContractRegistry().register(ToolContract("t", " ", {}))

    def test_resolved_copy_is_isolated(self):
        registry = ToolContractRegistry()
        registry.resolve("bash").parameters["properties"].clear()
        self.assertIn("command", registry.resolve("bash").parameters["properties"])

    def test_llm_definitions(self):
        registry = ToolContractRegistry()
        with_aliases = [d["function"]["name"] for d in registry.list_llm_tool_definitions()]
        without = [d["function"]["name"] for d in registry.list_llm_tool_definitions(include_aliases=False)]
        self.assertIn("shell", with_aliases)
        self.assertNotIn("shell", without)
        self.assertEqual(len(without), len(set(without)))
        click = next(d for d in registry.list_llm_tool_definitions(strip_combinators=True)
                     if d["function"]["name"] == "click")
        self.assertNotIn("anyOf", click["function"]["parameters"])

    def test_strip_combinators(self):
        params = {"type": "object", "anyOf": [], "oneOf": [], "properties": {}}
        self.assertEqual(strip_schema_combinators(params), {"type": "object", "properties": {}})
        self.assertIn("anyOf", params)


# ═══════════════════════════════════════════════════════════════════
#  Planner
# ═══════════════════════════════════════════════════════════════════

class TestPlannerLocalTools(unittest.TestCase):

    def setUp(self):
        self.planner = ToolPlanner(ToolContractRegistry())

    def _plan(self, name, arguments="{}", state=None):
        return _run(self.planner.resolve(_call(name, arguments), "s1", state))

    def _plan_error(self, name, arguments="{}", state=None) -> PlanError:
        with self.assertRaises(PlanError) as ctx:
            self._plan(name, arguments, state)
        return ctx.exception

    def test_bad_json(self):
        err = self._plan_error("bash", "{not json")
        self.assertEqual(err.code, "E_ARGS_PARSE")
        self.assertEqual(err.resume_strategy, "replan")

    def test_unknown_tool(self):
        err = self._plan_error("teleport")
        self.assertEqual(err.code, "E_UNKNOWN_TOOL")
        self.assertIn("bash", err.supported_tools)

    def test_bash_via_alias(self):
        plan = self._plan("shell", '{"command": "ls -la"}')
        self.assertIsInstance(plan, BridgePlan)
        self.assertEqual(plan.tool, "bash")
        self.assertEqual(plan.capability, "process.exec")
        self.assertEqual(plan.frame["args"], {"cmdId": "bash.exec", "args": ["ls -la"], "timeoutMs": 120000})

    def test_bash_timeout_clamped(self):
        plan = self._plan("bash", '{"command": "x", "timeoutMs": 5}')
        self.assertEqual(plan.frame["args"]["timeoutMs"], 200)

    def test_bash_needs_command(self):
        self.assertEqual(self._plan_error("bash", '{"command": "  "}').code, "E_ARGS")

    def test_bash_browser_runtime_unsupported(self):
        err = self._plan_error("bash", '{"command": "ls", "runtime": "browser"}')
        self.assertEqual(err.code, "E_TOOL_UNSUPPORTED")

    def test_virtual_path_wins_over_runtime(self):
        plan = self._plan("read_file", '{"path": "mem://notes.txt", "runtime": "local", "offset": 4}')
        self.assertIsInstance(plan, VirtualFsPlan)
        self.assertEqual((plan.capability, plan.op), ("fs.read", "read"))
        self.assertEqual(plan.args, {"path": "mem://notes.txt", "offset": 4})

    def test_browser_runtime_routes_virtual(self):
        plan = self._plan("write_file", '{"path": "draft.md", "content": "x", "runtime": "browser"}')
        self.assertIsInstance(plan, VirtualFsPlan)
        self.assertEqual(plan.args["mode"], "overwrite")

    def test_local_read(self):
        plan = self._plan("read_file", '{"path": "src/a.py"}')
        self.assertIsInstance(plan, BridgePlan)
        self.assertEqual(plan.frame, {"tool": "read", "args": {"path": "src/a.py"}})

    def test_write_mode_validated(self):
        self.assertEqual(self._plan_error("write_file", '{"path": "a", "mode": "truncate"}').code, "E_ARGS")

    def test_edit_normalized(self):
        plan = self._plan("edit_file", '{"path": "a", "edits": [{"old": "x", "new": 1}]}')
        self.assertEqual(plan.frame["args"]["edits"], [{"old": "x", "new": "1", "all": False}])
        self.assertEqual(self._plan_error("edit_file", '{"path": "a", "edits": []}').code, "E_ARGS")
        self.assertEqual(self._plan_error("edit_file", '{"path": "a", "edits": [{"new": "y"}]}').code, "E_ARGS")


class TestPlannerBrowserTools(unittest.TestCase):

    def setUp(self):
        self.active_calls = []

        async def active(session_id):
            self.active_calls.append(session_id)
            return 7

        self.planner = ToolPlanner(ToolContractRegistry(), active_target=active)
        self.state = RunState(session_id="s1")

    def _plan(self, name, arguments="{}"):
        return _run(self.planner.resolve(_call(name, arguments), "s1", self.state))

    def test_target_priority(self):
        plan = self._plan("scroll_page", "{}")
        self.assertEqual(plan.tab_id, 7)
        self.assertEqual(self.state.last_target_id, 7)

        plan = self._plan("scroll_page", '{"tabId": 3}')
        self.assertEqual(plan.tab_id, 3)
        self.assertEqual(self._plan("scroll_page", "{}").tab_id, 3)
        self.assertEqual(len(self.active_calls), 1)

    def test_shared_before_active(self):
        self.state.shared_target_ids = [11, 12]
        self.assertEqual(self._plan("press_key", '{"key": "Enter"}').tab_id, 11)
        self.assertEqual(self.active_calls, [])

    def test_no_tab(self):
        planner = ToolPlanner(ToolContractRegistry())
        with self.assertRaises(PlanError) as ctx:
            _run(planner.resolve(_call("scroll_page"), "s1", RunState(session_id="s1")))
        self.assertEqual(ctx.exception.code, "E_NO_TAB")
        self.assertTrue(ctx.exception.retryable)

    def test_click_needs_reference(self):
        with self.assertRaises(PlanError) as ctx:
            self._plan("click", '{"tabId": 1}')
        self.assertEqual(ctx.exception.code, "E_REF_REQUIRED")
        self.assertEqual(ctx.exception.resume_strategy, "retry_with_fresh_snapshot")

    def test_click_plan(self):
        plan = self._plan("click", '{"uid": "e5", "forceFocus": true, "expect": {"urlChanged": true, "x": 1}}')
        self.assertIsInstance(plan, BrowserActionPlan)
        self.assertEqual(plan.action, {"kind": "click", "uid": "e5"})
        self.assertTrue(plan.force_focus)
        self.assertEqual(plan.expect, {"urlChanged": True})
        self.assertTrue(plan.hard_verify)

    def test_fill_needs_value(self):
        with self.assertRaises(PlanError):
            self._plan("fill_element_by_uid", '{"uid": "e1"}')
        plan = self._plan("fill_element_by_uid", '{"uid": "e1", "value": 42}')
        self.assertEqual(plan.action["value"], "42")
        self.assertFalse(plan.hard_verify)

    def test_navigate_is_hard_verify(self):
        plan = self._plan("navigate_tab", '{"url": "https://example.com"}')
        self.assertEqual(plan.kind, "navigate")
        self.assertTrue(plan.hard_verify)

    def test_fill_form_steps(self):
        plan = self._plan("fill_form", (
            '{"elements": [{"uid": "a", "value": "x"}, {"ref": "r2", "value": "y"}],'
            ' "submit": {"kind": "press"}}'
        ))
        self.assertEqual([s["kind"] for s in plan.steps], ["fill", "fill", "press"])
        self.assertEqual(plan.steps[-1]["key"], "Enter")
        self.assertEqual(plan.steps[1]["ref"], "r2")

    def test_computer(self):
        plan = self._plan("computer", '{"action": "left_click", "coordinate": [10.6, 20]}')
        self.assertEqual(plan.kind, "click")
        self.assertEqual(plan.action["coordinate"], [10, 20])
        with self.assertRaises(PlanError):
            self._plan("computer", '{"action": "left_click", "coordinate": [1]}')
        with self.assertRaises(PlanError):
            self._plan("computer", '{"action": "dance"}')
        plan = self._plan("computer", '{"action": "scroll", "scrollDirection": "up"}')
        self.assertEqual((plan.action["scrollDirection"], plan.action["scrollAmount"]), ("up", 3))

    def test_search_plan(self):
        plan = self._plan("search_elements", '{"query": "Sign in", "maxResults": 999}')
        self.assertIsInstance(plan, BrowserSnapshotPlan)
        self.assertEqual(plan.query, "Sign in")
        self.assertEqual(plan.max_results, 200)

    def test_verify_plan_accepts_flat_expect(self):
        plan = self._plan("browser_verify", '{"titleContains": "Cart"}')
        self.assertIsInstance(plan, BrowserVerifyPlan)
        self.assertEqual(plan.expect, {"titleContains": "Cart"})

    def test_tab_lifecycle_plans(self):
        self.assertEqual(self._plan("get_all_tabs").op, "list")
        plan = self._plan("create_new_tab", '{"url": "https://a.test"}')
        self.assertIsInstance(plan, LocalPlan)
        self.assertEqual(plan.args, {"url": "https://a.test", "active": True})
        self.assertEqual(self._plan("close_tab", '{"tabId": 4}').args, {"tabId": 4})
        with self.assertRaises(PlanError):
            self._plan("close_tab", "{}")


# ═══════════════════════════════════════════════════════════════════
#  Element ranking
# ═══════════════════════════════════════════════════════════════════

class TestElementRanking(unittest.TestCase):

    NODES = [
        {"uid": "1", "role": "link", "name": "Home"},
        {"uid": "2", "role": "button", "name": "Submit order"},
        {"uid": "3", "tag": "div", "text": "submit your order below"},
    ]

    def test_unmatched_nodes_dropped(self):
        ranked = rank_elements(self.NODES, "submit order")
        self.assertEqual([r.node["uid"] for r in ranked], ["2", "3"])
        self.assertTrue(ranked[0].full_match)
        self.assertGreater(ranked[0].score, ranked[1].score)

    def test_empty_query_keeps_order(self):
        ranked = rank_elements(self.NODES, "", max_results=2)
        self.assertEqual([r.node["uid"] for r in ranked], ["1", "2"])

    def test_typing_intent_prefers_editable(self):
        nodes = [
            {"uid": "b", "role": "button", "name": "message"},
            {"uid": "t", "role": "textbox", "name": "message"},
        ]
        self.assertEqual(rank_elements(nodes, "type message")[0].node["uid"], "t")

    def test_disabled_penalized(self):
        nodes = [
            {"uid": "d", "role": "button", "name": "save", "disabled": True},
            {"uid": "e", "role": "button", "name": "save"},
        ]
        self.assertEqual(rank_elements(nodes, "save")[0].node["uid"], "e")

    def test_to_dict(self):
        out = rank_elements(self.NODES, "home")[0].to_dict()
        self.assertEqual(out["uid"], "1")
        self.assertTrue(out["fullMatch"])
        self.assertEqual(tokenize_query("  A  b "), ["a", "b"])


# ═══════════════════════════════════════════════════════════════════
#  Verification helpers
# ═══════════════════════════════════════════════════════════════════

class TestVerificationHelpers(unittest.TestCase):

    def test_normalize_expect(self):
        self.assertIsNone(normalize_verify_expect(None))
        self.assertIsNone(normalize_verify_expect({"urlContains": "  ", "urlChanged": False}))
        self.assertEqual(
            normalize_verify_expect({"urlContains": " /cart ", "bogus": 1, "urlChanged": True}),
            {"urlContains": "/cart", "urlChanged": True},
        )

    def test_should_verify(self):
        self.assertTrue(should_verify("click", "on_critical"))
        self.assertFalse(should_verify("read_value", "on_critical"))
        self.assertTrue(should_verify("read_value", "always"))
        self.assertFalse(should_verify("click", "off"))
        self.assertTrue(should_verify("navigate", None))

    def test_requires_lease(self):
        self.assertTrue(requires_lease("click"))
        self.assertFalse(requires_lease("read_value"))
        self.assertTrue(requires_lease("read_value", "required"))
        self.assertFalse(requires_lease("click", "none"))

    def test_progress_verify(self):
        before = {"page": {"url": "https://a", "title": "A", "textLength": 10, "nodeCount": 5}}
        same = build_observe_progress_verify(before, before)
        self.assertFalse(same["ok"])
        after = {"page": {"url": "https://a", "title": "A", "textLength": 12, "nodeCount": 5}}
        changed = build_observe_progress_verify(before, after)
        self.assertTrue(changed["ok"])
        self.assertEqual([c["name"] for c in changed["checks"] if c["pass"]], ["textLengthChanged"])


# ═══════════════════════════════════════════════════════════════════
#  No-progress detection
# ═══════════════════════════════════════════════════════════════════

class TestNoProgress(unittest.TestCase):

    def test_repeat_triggers_on_third(self):
        detector = NoProgressDetector(repeat_limit=3)
        self.assertIsNone(detector.record("click", {"uid": "a"}))
        self.assertIsNone(detector.record("click", {"uid": "a"}))
        trigger = detector.record("click", {"uid": "a"})
        self.assertEqual(trigger.kind, TRIGGER_REPEAT_SIGNATURE)
        self.assertEqual(trigger.streak, 3)
        self.assertEqual(detector.signatures, [])

    def test_ping_pong(self):
        detector = NoProgressDetector(ping_pong_limit=1)
        results = [detector.record(n, {}) for n in ("a", "b", "a")]
        self.assertEqual(results, [None, None, None])
        trigger = detector.record("b", {})
        self.assertEqual(trigger.kind, TRIGGER_PING_PONG)

    def test_distinct_calls_never_trigger(self):
        detector = NoProgressDetector(repeat_limit=2, ping_pong_limit=1)
        self.assertEqual([detector.record(n, {}) for n in "abcd"], [None] * 4)

    def test_signature_canonical(self):
        self.assertEqual(tool_signature("Click", {"b": 1, "a": 2}), tool_signature("click", {"a": 2, "b": 1}))
        self.assertLessEqual(len(tool_signature("x", {"v": "z" * 2000})), 512)


if __name__ == "__main__":
    unittest.main()
