"""
Message history repair tests.

Covers:
  - Tool call id normalization (valid passthrough, sanitizing, hashing)
  - Orphan tool result repair
  - Missing tool result repair
  - Failed assistant turns dropped from the model view, with their results
  - Distinct raw ids that sanitize alike stay distinct
  - Compaction summary and session title helpers
"""

from __future__ import annotations

import os
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from browser_agent.core.message_model import (
    MISSING_TOOL_RESULT,
    TOOL_CALL_ID_VALID_RE,
    build_compaction_summary_message,
    derive_session_title,
    fnv1a_32,
    normalize_session_title,
    normalize_text_content,
    normalize_tool_call_id,
    transform_messages_for_llm,
)
from browser_agent.core.models import Message, ToolCall


class TestToolCallIds(unittest.TestCase):

    def test_valid_id_unchanged(self):
        self.assertEqual(normalize_tool_call_id("call_abc-123"), "call_abc-123")

    def test_invalid_characters_sanitized(self):
        self.assertEqual(normalize_tool_call_id("call.1/x"), "call_1_x")

    def test_long_id_hashed_within_limit(self):
        raw = "x" * 90
        out = normalize_tool_call_id(raw)
        self.assertLessEqual(len(out), 64)
        self.assertTrue(TOOL_CALL_ID_VALID_RE.match(out))
        self.assertTrue(out.endswith(fnv1a_32(raw)))

    def test_normalization_is_deterministic(self):
        raw = "toolu|" + "z" * 80
        self.assertEqual(normalize_tool_call_id(raw), normalize_tool_call_id(raw))

    def test_empty_uses_seed(self):
        self.assertEqual(normalize_tool_call_id("", "bash_1_1"), "bash_1_1")
        self.assertEqual(normalize_tool_call_id(None), "tool")

    def test_fnv1a_known_values(self):
        self.assertEqual(fnv1a_32(""), "811c9dc5")
        self.assertEqual(fnv1a_32("a"), "e40c292c")


class TestTransform(unittest.TestCase):

    def test_orphan_tool_result_gets_declared(self):
        out = transform_messages_for_llm([
            {"role": "user", "content": "hi"},
            {"role": "tool", "tool_call_id": "c1", "name": "bash", "content": "ok"},
        ])
        self.assertEqual([m["role"] for m in out], ["user", "assistant", "tool"])
        call = out[1]["tool_calls"][0]
        self.assertEqual(call["id"], "c1")
        self.assertEqual(call["function"]["name"], "bash")
        self.assertEqual(out[2]["tool_call_id"], "c1")

    def test_missing_result_is_filled(self):
        out = transform_messages_for_llm([
            Message(role="user", content="go"),
            Message(role="assistant", tool_calls=[
                ToolCall(id="a", name="bash"),
                ToolCall(id="b", name="read_file"),
            ]),
            Message(role="tool", content="done", tool_call_id="a", name="bash"),
            Message(role="user", content="next"),
        ])
        self.assertEqual([m["role"] for m in out], ["user", "assistant", "tool", "tool", "user"])
        self.assertEqual(out[3]["tool_call_id"], "b")
        self.assertEqual(out[3]["content"], MISSING_TOOL_RESULT)

    def test_invalid_ids_rewritten_on_both_sides(self):
        out = transform_messages_for_llm([
            Message(role="user", content="go"),
            Message(role="assistant", tool_calls=[ToolCall(id="call.1", name="bash")]),
            Message(role="tool", content="ok", tool_call_id="call.1", name="bash"),
        ])
        self.assertEqual(out[1]["tool_calls"][0]["id"], "call_1")
        self.assertEqual(out[2]["tool_call_id"], "call_1")

    def test_error_turns_are_dropped(self):
        out = transform_messages_for_llm([
            Message(role="user", content="go"),
            Message(role="assistant", content="LLM failed", stop_reason="error"),
            Message(role="user", content="again"),
        ])
        self.assertEqual([m["content"] for m in out], ["go", "again"])

    def test_error_turn_takes_its_tool_results_along(self):
        out = transform_messages_for_llm([
            Message(role="user", content="go"),
            Message(role="assistant", stop_reason="error", tool_calls=[ToolCall(id="c1", name="bash")]),
            Message(role="tool", content="partial", tool_call_id="c1", name="bash"),
            Message(role="user", content="again"),
        ])
        self.assertEqual([m["role"] for m in out], ["user", "user"])

    def test_every_tool_result_is_declared_after_repair(self):
        out = transform_messages_for_llm([
            Message(role="user", content="go"),
            Message(role="assistant", stop_reason="aborted", tool_calls=[ToolCall(id="c1", name="click")]),
            Message(role="tool", content="ok", tool_call_id="c1", name="click"),
            Message(role="tool", content="late", tool_call_id="c2", name="bash"),
        ])
        declared = set()
        for message in out:
            declared.update(call["id"] for call in message.get("tool_calls", []))
            if message["role"] == "tool":
                self.assertIn(message["tool_call_id"], declared)
        self.assertEqual([m.get("tool_call_id") for m in out if m["role"] == "tool"], ["c2"])

    def test_colliding_sanitized_ids_stay_distinct(self):
        out = transform_messages_for_llm([
            Message(role="user", content="go"),
            Message(role="assistant", tool_calls=[
                ToolCall(id="a.b", name="bash"),
                ToolCall(id="a:b", name="read_file"),
            ]),
            Message(role="tool", content="from bash", tool_call_id="a.b", name="bash"),
            Message(role="tool", content="from read", tool_call_id="a:b", name="read_file"),
        ])
        call_ids = [call["id"] for call in out[1]["tool_calls"]]
        self.assertEqual(call_ids[0], "a_b")
        self.assertNotEqual(call_ids[0], call_ids[1])
        self.assertTrue(all(TOOL_CALL_ID_VALID_RE.match(i) for i in call_ids))
        results = {m["content"]: m["tool_call_id"] for m in out if m["role"] == "tool"}
        self.assertEqual(results, {"from bash": call_ids[0], "from read": call_ids[1]})

    def test_collision_rewrite_is_deterministic(self):
        history = [
            Message(role="assistant", tool_calls=[ToolCall(id="a_b", name="bash"), ToolCall(id="a.b", name="bash")]),
            Message(role="tool", content="1", tool_call_id="a_b", name="bash"),
            Message(role="tool", content="2", tool_call_id="a.b", name="bash"),
        ]
        first = transform_messages_for_llm(history)
        self.assertEqual(first, transform_messages_for_llm(history))
        self.assertEqual(first[0]["tool_calls"][0]["id"], "a_b")
        self.assertEqual(first[2]["tool_call_id"], first[0]["tool_calls"][1]["id"])

    def test_empty_messages_skipped(self):
        out = transform_messages_for_llm([
            {"role": "user", "content": "  "},
            {"role": "assistant", "content": ""},
            {"role": "system", "content": "sys"},
        ])
        self.assertEqual(out, [{"role": "system", "content": "sys"}])

    def test_legacy_tool_result_without_id_becomes_user(self):
        out = transform_messages_for_llm([{"role": "tool", "name": "bash", "content": "42"}])
        self.assertEqual(out[0]["role"], "user")
        self.assertIn("Tool result (bash)", out[0]["content"])

    def test_text_content_forms(self):
        self.assertEqual(normalize_text_content([{"text": "a"}, "b", {"content": "c"}]), "abc")
        self.assertEqual(normalize_text_content(True), "true")
        self.assertEqual(normalize_text_content(3), "3")
        self.assertEqual(normalize_text_content(None), "")


class TestSessionHelpers(unittest.TestCase):

    def test_compaction_summary(self):
        self.assertIsNone(build_compaction_summary_message("  "))
        msg = build_compaction_summary_message("did things")
        self.assertEqual(msg["role"], "user")
        self.assertIn("<summary>\ndid things\n</summary>", msg["content"])

    def test_title_truncates(self):
        title = derive_session_title([
            Message(role="user", content="Please open example.com and check the price of things"),
        ])
        self.assertTrue(title.startswith("open example.com"))
        self.assertTrue(title.endswith("…"))
        self.assertEqual(len(title), 29)

    def test_title_falls_back_to_assistant(self):
        title = derive_session_title([
            Message(role="user", content="?"),
            Message(role="assistant", content="Checked the **weather**"),
        ])
        self.assertEqual(title, "Checked the weather")

    def test_normalize_title_fallback(self):
        self.assertEqual(normalize_session_title("  ", "Session 1"), "Session 1")


if __name__ == "__main__":
    unittest.main()
