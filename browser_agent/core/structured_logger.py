"""
Structured Logger — run-scoped log fields for the engine.

Records can carry which session a line belongs to, the loop step, the tool
being executed and the LLM profile in use.  Output is either one JSON
object per line (``logging.format: json`` / ``BROWSER_AGENT_LOG_FORMAT=json``)
or the usual human format with a ``[session#step]`` prefix.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, replace
from typing import Any, Optional

CONTEXT_FIELDS = ("session_id", "step", "tool", "profile")


# ── Context ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LogContext:
    session_id: str = ""
    step: int = 0
    tool: str = ""
    profile: str = ""

    def with_fields(self, **fields: Any) -> "LogContext":
        known = {k: v for k, v in fields.items() if k in CONTEXT_FIELDS}
        return replace(self, **known)

    def as_extra(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v}


class ContextFilter(logging.Filter):
    """Makes sure every record has the context attributes the formatters read."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, "")
        return True


# ── Formatters ──────────────────────────────────────────────────────

class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update({name: getattr(record, name) for name in CONTEXT_FIELDS if getattr(record, name, "")})
        fields = getattr(record, "fields", None)
        if fields:
            entry["fields"] = fields
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class HumanFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s", datefmt="%H:%M:%S")

    def formatMessage(self, record: logging.LogRecord) -> str:
        session_id = getattr(record, "session_id", "")
        if not session_id:
            return super().formatMessage(record)
        step = getattr(record, "step", "")
        tag = f"[{session_id}#{step}]" if step else f"[{session_id}]"
        line = super().formatMessage(record)
        head, sep, tail = line.partition(": ")
        return f"{head}{sep}{tag} {tail}" if sep else f"{tag} {line}"


# ── Logger wrapper ──────────────────────────────────────────────────

class StructuredLogger:
    """
    ``logging.Logger`` front that stamps a ``LogContext`` onto each call.

        log = StructuredLogger(__name__).with_context(session_id=sid)
        log.info("dispatching", tool="click")
    """

    def __init__(self, name: str, context: Optional[LogContext] = None):
        self._logger = logging.getLogger(name)
        self.context = context or LogContext()

    def with_context(self, **fields: Any) -> "StructuredLogger":
        return StructuredLogger(self._logger.name, self.context.with_fields(**fields))

    def _log(self, level: int, msg: str, fields: dict) -> None:
        if self._logger.isEnabledFor(level):
            extra = self.context.as_extra()
            if fields:
                extra["fields"] = fields
            self._logger.log(level, msg, extra=extra, stacklevel=3)

    def debug(self, msg: str, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._log(logging.INFO, msg, fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._log(logging.WARNING, msg, fields)

    def error(self, msg: str, **fields: Any) -> None:
        self._log(logging.ERROR, msg, fields)


def setup_structured_logging(
    json_mode: Optional[bool] = None,
    level: str = "WARNING",
    log_file: Optional[str] = None,
) -> None:
    """
    Replace the root handlers with stderr (plus ``log_file`` when given).

    ``json_mode=None`` reads ``BROWSER_AGENT_LOG_FORMAT``.
    """
    if json_mode is None:
        json_mode = os.getenv("BROWSER_AGENT_LOG_FORMAT", "").strip().lower() == "json"

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    formatter = StructuredFormatter() if json_mode else HumanFormatter()
    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(ContextFilter())
        root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.WARNING))

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(root.level, logging.WARNING))
