"""
Session Store — conversation history and metadata per session.

The engine only needs three calls from its store: ``get_meta``,
``append_message`` and ``build_session_context``.  This in-memory
implementation backs the CLI and the tests; hosts with durable storage
implement the same methods.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from .models import Message

logger = logging.getLogger(__name__)


@dataclass
class SessionMeta:
    """Metadata about one session."""
    session_id: str
    created_at: float
    updated_at: float
    message_count: int = 0
    title: str = ""
    # True once a title was derived from the conversation (not the placeholder)
    title_auto: bool = False
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SessionContext:
    """What the loop feeds to the model: the live messages plus any compacted prefix."""
    messages: list[Message]
    previous_summary: str = ""


class SessionNotFound(KeyError):
    pass


class InMemorySessionStore:

    def __init__(self):
        self._meta: dict[str, SessionMeta] = {}
        self._messages: dict[str, list[Message]] = {}
        self._summaries: dict[str, str] = {}

    def create_session(self, session_id: Optional[str] = None, title: str = "") -> str:
        session_id = session_id or uuid.uuid4().hex[:12]
        if session_id in self._meta:
            return session_id
        now = time.time()
        self._meta[session_id] = SessionMeta(
            session_id=session_id,
            created_at=now,
            updated_at=now,
            title=title or f"Session {session_id[:8]}",
        )
        self._messages[session_id] = []
        logger.info(f"Created session: {session_id}")
        return session_id

    def has_session(self, session_id: str) -> bool:
        return session_id in self._meta

    def get_meta(self, session_id: str) -> Optional[SessionMeta]:
        return self._meta.get(session_id)

    def _require(self, session_id: str) -> SessionMeta:
        meta = self._meta.get(session_id)
        if meta is None:
            raise SessionNotFound(session_id)
        return meta

    def append_message(self, session_id: str, message: Message) -> None:
        meta = self._require(session_id)
        self._messages[session_id].append(message)
        meta.message_count += 1
        meta.updated_at = time.time()

    def get_messages(self, session_id: str) -> list[Message]:
        self._require(session_id)
        return list(self._messages[session_id])

    def update_meta(self, session_id: str, **changes: Any) -> SessionMeta:
        meta = self._require(session_id)
        for key, value in changes.items():
            if key == "created_at":
                continue
            if hasattr(meta, key):
                setattr(meta, key, value)
            else:
                meta.extra[key] = value
        meta.updated_at = time.time()
        return meta

    def set_summary(self, session_id: str, summary: str, keep_last: int = 0) -> None:
        """Replace the message prefix with ``summary``, keeping the last ``keep_last`` messages."""
        self._require(session_id)
        self._summaries[session_id] = summary
        messages = self._messages[session_id]
        self._messages[session_id] = messages[-keep_last:] if keep_last > 0 else []

    def build_session_context(self, session_id: str) -> SessionContext:
        self._require(session_id)
        return SessionContext(
            messages=list(self._messages[session_id]),
            previous_summary=self._summaries.get(session_id, ""),
        )
