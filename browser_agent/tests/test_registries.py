"""
Hook runner, capability registry, policy, lease and session store tests.

Covers:
  - Hook ordering by priority, patches, blocks, handler errors
  - Hook contract violations
  - Event bus listeners, failure containment, bounded history
  - Capability registry keyed by (capability, mode)
  - Policy overrides layered on built-ins
  - Tab leases: ownership, renewal, expiry, context manager
  - In-memory session store: history, meta, compaction summary
"""

from __future__ import annotations

import asyncio
import os
import sys
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from browser_agent.core.capabilities import (
    MODE_BRIDGE,
    MODE_CDP,
    MODE_SCRIPT,
    VERIFY_ALWAYS,
    VERIFY_ON_CRITICAL,
    CapabilityPolicy,
    CapabilityPolicyRegistry,
    CapabilityRegistry,
    FunctionProvider,
    StepInput,
)
from browser_agent.core.event_bus import EventBus, EventType
from browser_agent.core.errors import HookContractError, LeaseError
from browser_agent.core.hooks import HOOK_TOOL_BEFORE_CALL, HookRunner
from browser_agent.core.lease import TabLeaseManager
from browser_agent.core.models import Message
from browser_agent.core.session_store import InMemorySessionStore, SessionNotFound


def _run(coro):
    return asyncio.run(coro)


async def _echo(step: StepInput):
    return {"action": step.action}


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


# ═══════════════════════════════════════════════════════════════════
#  Hooks
# ═══════════════════════════════════════════════════════════════════

class TestHookRunner(unittest.TestCase):

    def test_no_handlers_passes_payload(self):
        result = _run(HookRunner().run(HOOK_TOOL_BEFORE_CALL, {"tool": "bash"}))
        self.assertEqual(result.value, {"tool": "bash"})
        self.assertFalse(result.blocked)

    def test_priority_then_registration_order(self):
        hooks = HookRunner()
        order = []
        hooks.on("h", lambda p: order.append("low"), priority=0)
        hooks.on("h", lambda p: order.append("high"), priority=10)
        hooks.on("h", lambda p: order.append("low2"), priority=0)
        _run(hooks.run("h", {}))
        self.assertEqual(order, ["high", "low", "low2"])

    def test_patch_chain(self):
        hooks = HookRunner()
        hooks.on("h", lambda p: {"action": "patch", "patch": {"a": 1}})

        async def second(payload):
            return {"action": "patch", "patch": {"b": payload["a"] + 1}}

        hooks.on("h", second)
        result = _run(hooks.run("h", {"x": 0}))
        self.assertEqual(result.value, {"x": 0, "a": 1, "b": 2})
        self.assertEqual(result.patch_count, 2)

    def test_block_stops_chain(self):
        hooks = HookRunner()
        seen = []
        hooks.on("h", lambda p: {"action": "block", "reason": "read-only"}, priority=5)
        hooks.on("h", lambda p: seen.append(p))
        result = _run(hooks.run("h", {}))
        self.assertTrue(result.blocked)
        self.assertEqual(result.reason, "read-only")
        self.assertEqual(seen, [])

    def test_handler_exception_recorded(self):
        hooks = HookRunner()

        def broken(payload):
            raise RuntimeError("boom")

        hooks.on("h", broken, id="broken")
        hooks.on("h", lambda p: {"action": "continue"})
        result = _run(hooks.run("h", {}))
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(result.errors[0].hook_id, "broken")
        self.assertFalse(result.blocked)

    def test_contract_violations(self):
        for bad in ("yes", {"action": "explode"}, {"action": "patch", "patch": [1]}):
            hooks = HookRunner()
            hooks.on("h", lambda p, bad=bad: bad)
            with self.assertRaises(HookContractError):
                _run(hooks.run("h", {}))

    def test_unsubscribe(self):
        hooks = HookRunner()
        off = hooks.on("h", lambda p: None, id="one")
        self.assertTrue(hooks.has("h"))
        self.assertTrue(off())
        self.assertFalse(hooks.has("h"))
        self.assertFalse(hooks.off("h", "one"))

    def test_payload_not_mutated(self):
        hooks = HookRunner()
        hooks.on("h", lambda p: {"action": "patch", "patch": {"a": 2}})
        payload = {"a": 1}
        _run(hooks.run("h", payload))
        self.assertEqual(payload, {"a": 1})


# ═══════════════════════════════════════════════════════════════════
#  Event bus
# ═══════════════════════════════════════════════════════════════════

class TestEventBus(unittest.TestCase):

    def test_typed_and_wildcard_listeners(self):
        bus = EventBus()
        typed, everything = [], []
        bus.subscribe(EventType.TOOL_CALL, typed.append)
        bus.subscribe(None, everything.append)
        bus.emit(EventType.TOOL_CALL, "s1", tool="click")
        bus.emit(EventType.LOOP_DONE, "s1")
        self.assertEqual([e.payload["tool"] for e in typed], ["click"])
        self.assertEqual(len(everything), 2)
        self.assertEqual(everything[0].as_json()["type"], "tool.call")

    def test_listener_failure_is_contained(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise ValueError("nope")

        bus.subscribe(EventType.LOOP_START, broken)
        bus.subscribe(EventType.LOOP_START, seen.append)
        with self.assertLogs("browser_agent.core.event_bus", level="WARNING"):
            bus.emit(EventType.LOOP_START, "s1")
        self.assertEqual(len(seen), 1)
        self.assertEqual(bus.listener_failures, 1)

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        token = bus.subscribe(EventType.LOOP_START, seen.append)
        self.assertTrue(bus.unsubscribe(token))
        self.assertFalse(bus.unsubscribe(token))
        bus.emit(EventType.LOOP_START)
        self.assertEqual(seen, [])

    def test_history_is_bounded_and_filterable(self):
        bus = EventBus(history_limit=3)
        for i in range(5):
            bus.emit(EventType.TOOL_RESULT, "a" if i % 2 else "b", index=i)
        self.assertEqual(bus.emitted, 5)
        self.assertEqual([e.payload["index"] for e in bus.get_event_history()], [2, 3, 4])
        self.assertEqual([e.payload["index"] for e in bus.get_event_history(session_id="a")], [3])
        self.assertEqual(bus.get_event_history(EventType.LOOP_DONE), [])


# ═══════════════════════════════════════════════════════════════════
#  Capabilities
# ═══════════════════════════════════════════════════════════════════

class TestCapabilityRegistry(unittest.TestCase):

    def test_register_and_resolve_by_mode(self):
        registry = CapabilityRegistry()
        cdp = FunctionProvider("p-cdp", "browser.action", MODE_CDP, _echo)
        script = FunctionProvider("p-script", "browser.action", MODE_SCRIPT, _echo)
        registry.register(cdp)
        registry.register(script)
        self.assertIs(registry.resolve("browser.action", MODE_SCRIPT), script)
        self.assertIs(registry.resolve("browser.action"), cdp)
        self.assertIsNone(registry.resolve("browser.action", MODE_BRIDGE))
        self.assertFalse(registry.has("fs.read"))

    def test_duplicate_rejected_unless_replace(self):
        registry = CapabilityRegistry()
        registry.register(FunctionProvider("a", "fs.read", MODE_BRIDGE, _echo))
        with self.assertRaises(ValueError):
            registry.register(FunctionProvider("b", "fs.read", MODE_BRIDGE, _echo))
        registry.register(FunctionProvider("b", "fs.read", MODE_BRIDGE, _echo), replace=True)
        self.assertEqual(registry.resolve("fs.read").id, "b")

    def test_empty_capability_rejected(self):
        with self.assertRaises(ValueError):
            CapabilityRegistry().register(FunctionProvider("x", " ", MODE_BRIDGE, _echo))

    def test_unregister_checks_id(self):
        registry = CapabilityRegistry()
        registry.register(FunctionProvider("a", "fs.read", MODE_BRIDGE, _echo))
        self.assertFalse(registry.unregister("fs.read", MODE_BRIDGE, expected_id="other"))
        self.assertTrue(registry.unregister("fs.read", MODE_BRIDGE, expected_id="a"))
        self.assertEqual(registry.list(), [])

    def test_function_provider_invokes(self):
        provider = FunctionProvider("a", "browser.action", MODE_CDP, _echo)
        out = _run(provider.invoke(StepInput("s", "browser.action", MODE_CDP, "click")))
        self.assertEqual(out, {"action": "click"})


class TestCapabilityPolicy(unittest.TestCase):

    def test_builtin_browser_action(self):
        policy = CapabilityPolicyRegistry().resolve("browser.action")
        self.assertEqual(policy.fallback_mode, MODE_CDP)
        self.assertEqual(policy.default_verify_policy, VERIFY_ON_CRITICAL)
        self.assertEqual(policy.lease_policy, "auto")

    def test_override_merges_non_null_fields(self):
        policies = CapabilityPolicyRegistry()
        pid = policies.register("browser.action", CapabilityPolicy(default_verify_policy=VERIFY_ALWAYS))
        policy = policies.resolve("browser.action")
        self.assertEqual(policy.default_verify_policy, VERIFY_ALWAYS)
        self.assertEqual(policy.fallback_mode, MODE_CDP)
        self.assertEqual(pid, "policy:browser.action")
        with self.assertRaises(ValueError):
            policies.register("browser.action", CapabilityPolicy())
        self.assertTrue(policies.unregister("browser.action", expected_id=pid))
        self.assertEqual(policies.resolve("browser.action").default_verify_policy, VERIFY_ON_CRITICAL)

    def test_unknown_capability_is_empty_policy(self):
        self.assertIsNone(CapabilityPolicyRegistry().resolve("custom.thing").fallback_mode)


# ═══════════════════════════════════════════════════════════════════
#  Leases
# ═══════════════════════════════════════════════════════════════════

class TestTabLeaseManager(unittest.TestCase):

    def test_exclusive_and_renewable(self):
        leases = TabLeaseManager(clock=FakeClock())
        self.assertTrue(leases.acquire("tab:1", "a", 1000).ok)
        self.assertTrue(leases.acquire("tab:1", "a", 1000).ok)
        refused = leases.acquire("tab:1", "b", 1000)
        self.assertFalse(refused.ok)
        self.assertEqual(refused.reason, "held_by_other")
        self.assertEqual(refused.holder, "a")

    def test_expiry_frees_target(self):
        clock = FakeClock()
        leases = TabLeaseManager(clock=clock)
        leases.acquire("tab:1", "a", 1000)
        clock.now += 2
        self.assertIsNone(leases.holder("tab:1"))
        self.assertTrue(leases.acquire("tab:1", "b", 1000).ok)

    def test_release_only_by_owner(self):
        leases = TabLeaseManager(clock=FakeClock())
        leases.acquire("tab:1", "a")
        self.assertFalse(leases.release("tab:1", "b"))
        self.assertTrue(leases.release("tab:1", "a"))
        self.assertEqual(leases.active_leases(), [])

    def test_context_manager_releases_on_error(self):
        leases = TabLeaseManager(clock=FakeClock())

        async def go():
            async with leases.lease("tab:9", "a"):
                raise RuntimeError("inside")

        with self.assertRaises(RuntimeError):
            _run(go())
        self.assertIsNone(leases.holder("tab:9"))

    def test_context_manager_refuses_held(self):
        leases = TabLeaseManager(clock=FakeClock())
        leases.acquire("tab:9", "other")

        async def go():
            async with leases.lease("tab:9", "a"):
                pass

        with self.assertRaises(LeaseError) as ctx:
            _run(go())
        self.assertEqual(ctx.exception.holder, "other")
        self.assertTrue(ctx.exception.retryable)


# ═══════════════════════════════════════════════════════════════════
#  Session store
# ═══════════════════════════════════════════════════════════════════

class TestSessionStore(unittest.TestCase):

    def test_create_is_idempotent(self):
        store = InMemorySessionStore()
        sid = store.create_session("abc")
        store.append_message(sid, Message(role="user", content="hi"))
        self.assertEqual(store.create_session("abc"), "abc")
        self.assertEqual(len(store.get_messages("abc")), 1)
        self.assertEqual(store.get_meta("abc").message_count, 1)

    def test_generated_id_and_title(self):
        store = InMemorySessionStore()
        sid = store.create_session()
        self.assertTrue(store.has_session(sid))
        self.assertTrue(store.get_meta(sid).title.startswith("Session "))

    def test_unknown_session(self):
        store = InMemorySessionStore()
        self.assertIsNone(store.get_meta("nope"))
        with self.assertRaises(SessionNotFound):
            store.append_message("nope", Message(role="user", content="x"))

    def test_update_meta_extra(self):
        store = InMemorySessionStore()
        sid = store.create_session()
        created = store.get_meta(sid).created_at
        meta = store.update_meta(sid, title="T", title_auto=True, pinned=True, created_at=0)
        self.assertEqual(meta.title, "T")
        self.assertTrue(meta.title_auto)
        self.assertEqual(meta.extra, {"pinned": True})
        self.assertEqual(meta.created_at, created)
        self.assertEqual(meta.session_id, sid)

    def test_summary_compacts_prefix(self):
        store = InMemorySessionStore()
        sid = store.create_session()
        for i in range(5):
            store.append_message(sid, Message(role="user", content=f"m{i}"))
        store.set_summary(sid, "earlier work", keep_last=2)
        context = store.build_session_context(sid)
        self.assertEqual([m.content for m in context.messages], ["m3", "m4"])
        self.assertEqual(context.previous_summary, "earlier work")


if __name__ == "__main__":
    unittest.main()
