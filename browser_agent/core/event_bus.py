"""
Event Bus — session-scoped pub-sub for runtime events.

UIs and tests subscribe to typed events (stream deltas, retry state, tool
results, loop lifecycle).  Emitting never fails: listener errors are
logged and counted.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

Listener = Callable[["RuntimeEvent"], Any]


# ── Event names ─────────────────────────────────────────────────────

class EventType(Enum):
    LOOP_START = "loop_start"
    LOOP_SKIP_STOPPED = "loop_skip_stopped"
    LOOP_DONE = "loop_done"
    LOOP_ERROR = "loop_error"
    LOOP_NO_PROGRESS = "loop_no_progress"
    LOOP_STEER_APPLIED = "loop_steer_applied"
    LLM_REQUEST = "llm.request"
    LLM_STREAM_DELTA = "llm.stream.delta"
    LLM_RESPONSE = "llm.response"
    LLM_ROUTE_ESCALATED = "llm.route_escalated"
    LLM_ROUTE_BLOCKED = "llm.route_blocked"
    AUTO_RETRY_START = "auto_retry_start"
    AUTO_RETRY_END = "auto_retry_end"
    TOOL_CALL = "tool.call"
    TOOL_RESULT = "tool.result"
    TOOL_FOCUS_ESCALATED = "tool.focus_escalated"
    STEP_EXECUTE_RESULT = "step_execute_result"
    SESSION_TITLE_UPDATED = "session_title_auto_updated"
    SESSION_TITLE_FAILED = "session_title_auto_update_failed"


@dataclass
class RuntimeEvent:
    event_type: EventType
    session_id: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)

    def as_json(self) -> Dict[str, Any]:
        return {
            "type": self.event_type.value,
            "sessionId": self.session_id,
            "payload": self.payload,
            "ts": self.ts,
        }


# ── Bus ─────────────────────────────────────────────────────────────

class EventBus:
    """
    Usage::

        bus = EventBus()
        bus.subscribe(EventType.LLM_STREAM_DELTA, lambda e: print(e.payload["text"], end=""))
        bus.emit(EventType.LOOP_START, "session-1", prompt="hi")

    Listeners are called synchronously in subscription order.  The last
    ``history_limit`` events are kept for inspection.
    """

    def __init__(self, history_limit: int = 1000):
        self._listeners: Dict[Optional[EventType], List[Tuple[str, Listener]]] = {}
        self._recent: Deque[RuntimeEvent] = deque(maxlen=max(1, history_limit))
        self._ids = itertools.count(1)
        self.emitted = 0
        self.listener_failures = 0

    def subscribe(self, event_type: Optional[EventType], listener: Listener) -> str:
        """``event_type=None`` receives everything.  Returns a token for ``unsubscribe``."""
        token = f"sub-{next(self._ids)}"
        self._listeners.setdefault(event_type, []).append((token, listener))
        return token

    def unsubscribe(self, token: str) -> bool:
        for key, entries in self._listeners.items():
            kept = [entry for entry in entries if entry[0] != token]
            if len(kept) != len(entries):
                self._listeners[key] = kept
                return True
        return False

    def emit(self, event_type: EventType, session_id: str = "", **payload: Any) -> RuntimeEvent:
        event = RuntimeEvent(event_type, session_id, payload)
        self.emitted += 1
        self._recent.append(event)

        targets = self._listeners.get(event_type, []) + self._listeners.get(None, [])
        for token, listener in targets:
            try:
                outcome = listener(event)
            except Exception as exc:
                self.listener_failures += 1
                logger.warning(f"Listener {token} failed on {event_type.value}: {exc}")
                continue
            if asyncio.iscoroutine(outcome):
                # Only plain callables are supported; drop the coroutine unawaited.
                outcome.close()
                logger.debug(f"Listener {token} returned a coroutine; ignored")
        return event

    def get_event_history(
        self,
        event_type: Optional[EventType] = None,
        session_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[RuntimeEvent]:
        matched = [
            e for e in self._recent
            if (event_type is None or e.event_type is event_type)
            and (session_id is None or e.session_id == session_id)
        ]
        return matched[-limit:] if limit > 0 else matched
