"""
Error catalog and data model tests.

Covers:
  - Failure classification (auto_replay / llm_replan / fail_fast)
  - Side-effect aware CLIENT_TIMEOUT handling
  - Retry hints and resume strategies
  - Focus escalation suggestions
  - Failure envelopes and ToolCall / Message / RetryState shapes
"""

from __future__ import annotations

import json
import os
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from browser_agent.core.error_catalog import (
    ErrorCatalog,
    FailureAction,
    FailureReason,
    ResumeStrategy,
    normalize_error_code,
)
from browser_agent.core.models import (
    ExecutionResult,
    Message,
    ModeEscalation,
    RetryState,
    ToolCall,
)


class TestClassification(unittest.TestCase):

    def test_busy_is_auto_replay(self):
        c = ErrorCatalog.classify("click", "E_BUSY")
        self.assertEqual(c.action, FailureAction.AUTO_REPLAY)
        self.assertTrue(c.retryable)

    def test_bridge_disconnected_is_auto_replay(self):
        c = ErrorCatalog.classify("bash", "E_BRIDGE_DISCONNECTED")
        self.assertEqual(c.action, FailureAction.AUTO_REPLAY)

    def test_unknown_code_is_fail_fast(self):
        c = ErrorCatalog.classify("bash", "E_SOMETHING_NEW")
        self.assertEqual(c.action, FailureAction.FAIL_FAST)
        self.assertFalse(c.retryable)

    def test_missing_code_is_fail_fast(self):
        c = ErrorCatalog.classify("bash", None)
        self.assertEqual(c.action, FailureAction.FAIL_FAST)

    def test_timeout_is_replan(self):
        c = ErrorCatalog.classify("bash", "E_TIMEOUT")
        self.assertEqual(c.action, FailureAction.LLM_REPLAN)
        self.assertIn("timeoutMs", c.retry_hint)

    def test_client_timeout_read_only_replays(self):
        c = ErrorCatalog.classify("read_file", "E_CLIENT_TIMEOUT")
        self.assertEqual(c.action, FailureAction.AUTO_REPLAY)

    def test_client_timeout_side_effecting_replans(self):
        c = ErrorCatalog.classify("write_file", "E_CLIENT_TIMEOUT")
        self.assertEqual(c.action, FailureAction.LLM_REPLAN)
        self.assertIn("partially applied", c.retry_hint)

    def test_normalize_error_code(self):
        self.assertEqual(normalize_error_code("e_busy"), "BUSY")
        self.assertEqual(normalize_error_code(" E_NO_TAB "), "NO_TAB")
        self.assertEqual(normalize_error_code(None), "")


class TestModeEscalation(unittest.TestCase):

    def test_verify_failed_on_environment_tool(self):
        esc = ErrorCatalog.suggest_mode_escalation("click", "E_VERIFY_FAILED")
        self.assertIsNotNone(esc)
        self.assertEqual(esc.reason, "verify_failed")
        self.assertEqual(esc.to_dict(), {"from": "background", "to": "focus", "reason": "verify_failed"})

    def test_focus_text_signal(self):
        esc = ErrorCatalog.suggest_mode_escalation("press_key", "E_OTHER", "tab is in background")
        self.assertEqual(esc.reason, "focus_signal")

    def test_action_timeout(self):
        esc = ErrorCatalog.suggest_mode_escalation("scroll_page", "E_CDP_TIMEOUT")
        self.assertEqual(esc.reason, "action_timeout")

    def test_non_environment_tool_never_escalates(self):
        self.assertIsNone(ErrorCatalog.suggest_mode_escalation("bash", "E_VERIFY_FAILED"))


class TestResumeStrategy(unittest.TestCase):

    def test_progress_uncertain_wins(self):
        c = ErrorCatalog.classify("click", "E_BUSY")
        s = ErrorCatalog.resume_strategy(FailureReason.PROGRESS_UNCERTAIN, c)
        self.assertEqual(s, ResumeStrategy.RETRY_WITH_FRESH_SNAPSHOT)

    def test_escalation_retries_same_args(self):
        c = ErrorCatalog.classify("click", "E_UNKNOWN")
        s = ErrorCatalog.resume_strategy(FailureReason.FAILED_EXECUTE, c, ModeEscalation(reason="x"))
        self.assertEqual(s, ResumeStrategy.RETRY_SAME_ARGS)

    def test_replan_retryable(self):
        c = ErrorCatalog.classify("click", "E_NO_TAB")
        s = ErrorCatalog.resume_strategy(FailureReason.FAILED_EXECUTE, c)
        self.assertEqual(s, ResumeStrategy.RETRY_WITH_FRESH_SNAPSHOT)

    def test_fail_fast_replans(self):
        c = ErrorCatalog.classify("bash", "E_WHATEVER")
        s = ErrorCatalog.resume_strategy(FailureReason.FAILED_EXECUTE, c)
        self.assertEqual(s, ResumeStrategy.REPLAN)


class TestFailureEnvelope(unittest.TestCase):

    def test_envelope_shape(self):
        env = ErrorCatalog.build_failure_envelope(
            "click", "element detached", "E_VERIFY_FAILED",
            error_reason=FailureReason.FAILED_VERIFY, args={"uid": "e1"},
        )
        d = env.to_dict()
        self.assertFalse(d["ok"])
        self.assertEqual(d["tool"], "click")
        self.assertEqual(d["error_code"], "E_VERIFY_FAILED")
        self.assertEqual(d["error_reason"], "failed_verify")
        self.assertEqual(d["failure_class"], "llm_replan")
        self.assertEqual(d["mode_escalation"]["to"], "focus")
        self.assertEqual(d["args"], {"uid": "e1"})
        self.assertEqual(json.loads(env.to_json())["tool"], "click")

    def test_explicit_hint_and_strategy_kept(self):
        env = ErrorCatalog.build_failure_envelope(
            "bash", "boom", "E_X", retry_hint="do this", resume_strategy="replan",
        )
        self.assertEqual(env.retry_hint, "do this")
        self.assertEqual(env.resume_strategy, "replan")
        self.assertNotIn("mode_escalation", env.to_dict())


class TestModels(unittest.TestCase):

    def test_tool_call_parsing(self):
        tc = ToolCall(id="c1", name="bash", arguments_json='{"command": "ls"}')
        self.assertEqual(tc.parsed_arguments(), {"command": "ls"})
        self.assertEqual(ToolCall(id="c", name="x", arguments_json="").parsed_arguments(), {})
        with self.assertRaises(ValueError):
            ToolCall(id="c", name="x", arguments_json="[1, 2]").parsed_arguments()
        with self.assertRaises(ValueError):
            ToolCall(id="c", name="x", arguments_json="{oops").parsed_arguments()

    def test_tool_call_with_arguments(self):
        tc = ToolCall(id="c1", name="click", arguments_json='{"uid": "a"}')
        patched = tc.with_arguments({"uid": "a", "forceFocus": True})
        self.assertEqual(patched.id, "c1")
        self.assertTrue(patched.parsed_arguments()["forceFocus"])

    def test_tool_call_from_dict_object_arguments(self):
        tc = ToolCall.from_dict({"id": "x", "function": {"name": "bash", "arguments": {"command": "pwd"}}})
        self.assertEqual(tc.name, "bash")
        self.assertEqual(tc.parsed_arguments(), {"command": "pwd"})

    def test_message_round_shape(self):
        msg = Message(role="tool", content="ok", tool_call_id="c1", name="bash")
        self.assertEqual(msg.to_dict(), {"role": "tool", "content": "ok", "tool_call_id": "c1"})
        parsed = Message.from_dict({"role": "assistant", "content": [{"text": "a"}, {"text": "b"}]})
        self.assertEqual(parsed.content, "ab")

    def test_retry_state(self):
        state = RetryState(max_attempts=2)
        state.update(1, 2, 500)
        self.assertTrue(state.active)
        self.assertEqual(state.to_dict()["delay_ms"], 500)
        state.reset()
        self.assertFalse(state.active)
        self.assertEqual(state.attempt, 0)
        self.assertEqual(state.max_attempts, 2)

    def test_execution_result(self):
        ok = ExecutionResult.success({"a": 1}, verified=True)
        self.assertEqual(ok.to_dict(), {"ok": True, "data": {"a": 1}, "verified": True})
        bad = ExecutionResult.failure("nope", "E_X", attempts=3)
        d = bad.to_dict()
        self.assertEqual(d["error_code"], "E_X")
        self.assertEqual(d["attempts"], 3)
        self.assertEqual(bad.error_reason, "failed_execute")


if __name__ == "__main__":
    unittest.main()
