"""
Local Bridge — shell and file tools executed on this machine.

Serves the ``process.exec`` and ``fs.*`` capabilities in ``bridge`` mode.
Every provider receives a bridge frame ``{tool, args}`` (built by the
planner) and returns the same result shapes a remote bridge would:

  - bash:  cmdId, argv, cwd, exitCode, stdout, stderr, byte counts,
           durationMs, truncated, timeoutHit
  - read:  path, offset, limit, size, truncated, content
  - write: path, mode, bytesWritten, sha256
  - edit:  path, applied, hunks, replacements

A non-zero exit code is data, not an error.  Paths are resolved against
the workspace; with ``strict_roots`` anything outside it is refused.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import time
from pathlib import Path
from typing import Any, Optional

from ..core.capabilities import MODE_BRIDGE, CapabilityProvider, StepInput
from ..core.errors import AgentError

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 30_000
MAX_READ_BYTES = 512 * 1024
DEFAULT_TIMEOUT_MS = 120_000

FRAME_TOOLS = {
    "process.exec": "bash",
    "fs.read": "read",
    "fs.write": "write",
    "fs.edit": "edit",
}


class LocalBridge:
    """
    Usage:
        bridge = LocalBridge(workspace_dir="/tmp/work", strict_roots=True)
        orch.register_providers(bridge.providers())
    """

    # Limit directory creation depth to prevent deep tree attacks
    MAX_DIR_DEPTH = 32

    def __init__(self, workspace_dir: str = ".", strict_roots: bool = False,
                 max_output_bytes: int = MAX_OUTPUT_BYTES):
        resolved = os.path.abspath(workspace_dir)
        # If the workspace doesn't exist, fall back to cwd
        self.workspace = os.path.realpath(resolved if os.path.isdir(resolved) else os.getcwd())
        self.strict_roots = strict_roots
        self._max_output = max_output_bytes

    def providers(self) -> list["LocalBridgeProvider"]:
        return [LocalBridgeProvider(self, capability) for capability in FRAME_TOOLS]

    async def invoke_frame(self, frame: dict) -> dict:
        tool = str(frame.get("tool") or "").strip().lower()
        args = frame.get("args") if isinstance(frame.get("args"), dict) else {}
        if tool == "bash":
            return await self.bash(args)
        if tool == "read":
            return await self.read(args)
        if tool == "write":
            return await self.write(args)
        if tool == "edit":
            return await self.edit(args)
        raise AgentError(f"Unknown bridge tool: {tool or '<empty>'}", code="E_TOOL")

    # ── Paths ──

    def _resolve(self, raw: Any, cwd: Optional[str] = None) -> Path:
        text = str(raw or "").strip()
        if not text:
            raise AgentError("path must be a non-empty string", code="E_ARGS")
        base = cwd or self.workspace
        path = Path(os.path.realpath(os.path.join(base, os.path.expanduser(text))))
        if self.strict_roots:
            root = self.workspace.rstrip(os.sep) + os.sep
            if str(path) != self.workspace and not str(path).startswith(root):
                raise AgentError(
                    "Path denied by workspace root policy",
                    code="E_PATH",
                    details={"path": str(path), "root": self.workspace},
                )
        return path

    # ── bash ──

    async def bash(self, args: dict) -> dict:
        cmd_id = str(args.get("cmdId") or "bash.exec")
        if cmd_id != "bash.exec":
            raise AgentError(f"Unsupported cmdId: {cmd_id}", code="E_ARGS")
        argv = args.get("args") if isinstance(args.get("args"), list) else []
        command = str(argv[0] if argv else "").strip()
        if not command:
            raise AgentError("bash needs a command", code="E_ARGS")
        timeout_ms = int(args.get("timeoutMs") or DEFAULT_TIMEOUT_MS)
        cwd = str(self._resolve(args["cwd"])) if args.get("cwd") else self.workspace

        started = time.monotonic()
        shell_argv = ["bash", "-c", command]
        process = await asyncio.create_subprocess_exec(
            *shell_argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_ms / 1000)
        except asyncio.CancelledError:
            await self._reap(process)
            raise
        except asyncio.TimeoutError:
            await self._reap(process)
            raise AgentError(
                f"Command timed out after {timeout_ms}ms: {command[:200]}",
                code="E_TIMEOUT",
                details={"timeoutMs": timeout_ms, "timeoutHit": True},
                retryable=True,
            )

        out_text, out_cut = self._limit(stdout)
        err_text, err_cut = self._limit(stderr)
        logger.debug(f"bash exit {process.returncode} in {cwd}: {command[:80]}")
        return {
            "cmdId": cmd_id,
            "argv": shell_argv,
            "cwd": cwd,
            "exitCode": process.returncode,
            "stdout": out_text,
            "stderr": err_text,
            "stdoutBytes": len(stdout),
            "stderrBytes": len(stderr),
            "bytesOut": len(stdout) + len(stderr),
            "durationMs": int((time.monotonic() - started) * 1000),
            "truncated": out_cut or err_cut,
            "timeoutHit": False,
        }

    @staticmethod
    async def _reap(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()

    def _limit(self, data: bytes) -> tuple[str, bool]:
        if len(data) <= self._max_output:
            return data.decode("utf-8", errors="replace"), False
        return data[:self._max_output].decode("utf-8", errors="replace") + "\n[Output truncated]", True

    # ── read / write / edit ──

    async def read(self, args: dict) -> dict:
        path = self._resolve(args.get("path"), args.get("cwd"))
        if not path.exists():
            raise AgentError(f"File not found: {path}", code="E_PATH", details={"path": str(path)})
        if path.is_dir():
            raise AgentError(f"Cannot read directory: {path}", code="E_PATH", details={"path": str(path)})

        offset = max(0, int(args.get("offset") or 0))
        limit = max(1, min(MAX_READ_BYTES, int(args.get("limit") or MAX_READ_BYTES)))
        size = path.stat().st_size
        if offset >= size:
            return {"path": str(path), "offset": offset, "limit": limit, "size": size,
                    "truncated": False, "content": ""}
        with open(path, "rb") as f:
            f.seek(offset)
            chunk = f.read(limit)
        return {
            "path": str(path),
            "offset": offset,
            "limit": limit,
            "size": size,
            "truncated": offset + len(chunk) < size,
            "content": chunk.decode("utf-8", errors="replace"),
        }

    async def write(self, args: dict) -> dict:
        path = self._resolve(args.get("path"), args.get("cwd"))
        mode = str(args.get("mode") or "overwrite")
        if mode not in ("overwrite", "append", "create"):
            raise AgentError("mode must be overwrite|append|create", code="E_ARGS")
        if len(path.parts) > self.MAX_DIR_DEPTH:
            raise AgentError(f"Path too deep ({len(path.parts)} levels)", code="E_PATH")
        content = "" if args.get("content") is None else str(args["content"])
        if mode == "create" and path.exists():
            raise AgentError(f"File already exists for create mode: {path}", code="E_EXISTS",
                             details={"path": str(path)})

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a" if mode == "append" else "w", encoding="utf-8") as f:
                f.write(content)
        except PermissionError as e:
            raise AgentError(f"Permission denied: {path}", code="E_PATH", details={"path": str(path)}) from e

        encoded = content.encode("utf-8")
        return {
            "path": str(path),
            "mode": mode,
            "bytesWritten": len(encoded),
            "sha256": hashlib.sha256(encoded).hexdigest(),
        }

    async def edit(self, args: dict) -> dict:
        path = self._resolve(args.get("path"), args.get("cwd"))
        if not path.is_file():
            raise AgentError(f"File not found: {path}", code="E_PATH", details={"path": str(path)})
        edits = args.get("edits") if isinstance(args.get("edits"), list) else []
        if not edits:
            raise AgentError("edits is required", code="E_ARGS")

        original = path.read_text(encoding="utf-8")
        content = original
        replacements = 0
        for i, edit in enumerate(edits):
            old = str(edit.get("old") or "")
            new = str(edit.get("new") or "")
            if not old:
                raise AgentError(f"edits[{i}].old cannot be empty", code="E_ARGS")
            count = content.count(old)
            if count == 0:
                raise AgentError(f"edits[{i}].old not found in {path}", code="E_EDIT_NOT_FOUND",
                                 details={"old": old[:200]})
            if edit.get("all") is True:
                content = content.replace(old, new)
                replacements += count
            elif count > 1:
                raise AgentError(
                    f"edits[{i}].old appears {count} times in {path}; add context or set all=true",
                    code="E_EDIT_AMBIGUOUS",
                )
            else:
                content = content.replace(old, new, 1)
                replacements += 1

        if content == original:
            raise AgentError("No changes produced by edits", code="E_EDIT_NO_CHANGE")
        path.write_text(content, encoding="utf-8")
        return {"path": str(path), "applied": True, "hunks": len(edits), "replacements": replacements}


class LocalBridgeProvider(CapabilityProvider):
    """One ``(capability, bridge)`` registration backed by a shared ``LocalBridge``."""

    mode = MODE_BRIDGE

    def __init__(self, bridge: LocalBridge, capability: str):
        if capability not in FRAME_TOOLS:
            raise ValueError(f"LocalBridge does not serve {capability}")
        self.bridge = bridge
        self.capability = capability
        self.id = f"local-bridge:{capability}"

    async def invoke(self, step: StepInput) -> Any:
        frame = step.args.get("frame") if isinstance(step.args.get("frame"), dict) else {}
        expected = FRAME_TOOLS[self.capability]
        if str(frame.get("tool") or "") != expected:
            raise AgentError(
                f"{self.id} expects a {expected} frame, got {frame.get('tool')!r}",
                code="E_ARGS",
            )
        return await self.bridge.invoke_frame(frame)
