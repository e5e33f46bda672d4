"""
No-progress detection over recent tool-call signatures.

A signature is ``lowercased tool name : canonical JSON of the arguments``.
Two stall patterns are tracked per loop run:
  - repeat: the same signature several times in a row
  - ping-pong: the last four signatures alternate A, B, A, B
"""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

TRIGGER_REPEAT_SIGNATURE = "repeat_signature"
TRIGGER_PING_PONG = "ping_pong"

DEFAULT_WINDOW = 12
DEFAULT_REPEAT_LIMIT = 3
DEFAULT_PING_PONG_LIMIT = 2
SIGNATURE_MAX_CHARS = 512


def tool_signature(name: str, args: Any, max_chars: int = SIGNATURE_MAX_CHARS) -> str:
    try:
        canonical = json.dumps(args, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        canonical = str(args)
    return f"{str(name or '').strip().lower()}:{canonical}"[:max_chars]


@dataclass
class NoProgressTrigger:
    kind: str                   # repeat_signature / ping_pong
    signature: str
    streak: int
    tool: str = ""

    def to_dict(self) -> dict:
        return {"kind": self.kind, "signature": self.signature, "streak": self.streak, "tool": self.tool}


class NoProgressDetector:
    """Bounded window of signatures plus streak counters; in-memory only."""

    def __init__(
        self,
        window: int = DEFAULT_WINDOW,
        repeat_limit: int = DEFAULT_REPEAT_LIMIT,
        ping_pong_limit: int = DEFAULT_PING_PONG_LIMIT,
    ):
        self.repeat_limit = max(1, repeat_limit)
        self.ping_pong_limit = max(1, ping_pong_limit)
        self._window: deque[str] = deque(maxlen=max(4, window))
        self.same_streak = 0
        self.ping_pong_streak = 0

    @property
    def signatures(self) -> list[str]:
        return list(self._window)

    def reset(self) -> None:
        self._window.clear()
        self.same_streak = 0
        self.ping_pong_streak = 0

    def record_signature(self, signature: str, tool: str = "") -> Optional[NoProgressTrigger]:
        previous = self._window[-1] if self._window else None
        self._window.append(signature)

        self.same_streak = self.same_streak + 1 if signature == previous else 1

        last = list(self._window)[-4:]
        if len(last) == 4 and last[0] == last[2] and last[1] == last[3] and last[0] != last[1]:
            self.ping_pong_streak += 1
        else:
            self.ping_pong_streak = 0

        trigger = None
        if self.same_streak >= self.repeat_limit:
            trigger = NoProgressTrigger(TRIGGER_REPEAT_SIGNATURE, signature, self.same_streak, tool)
        elif self.ping_pong_streak >= self.ping_pong_limit:
            trigger = NoProgressTrigger(TRIGGER_PING_PONG, signature, self.ping_pong_streak, tool)

        if trigger is not None:
            logger.info(f"No progress detected ({trigger.kind}, streak {trigger.streak}) on {tool or signature[:60]}")
            # Start counting afresh so one stall is reported once
            self.same_streak = 0
            self.ping_pong_streak = 0
            self._window.clear()
        return trigger

    def record(self, name: str, args: Any) -> Optional[NoProgressTrigger]:
        return self.record_signature(tool_signature(name, args), tool=str(name or ""))
