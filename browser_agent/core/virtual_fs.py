"""
Virtual filesystem — in-memory files addressed as ``mem://`` or ``vfs://``.

Used when a file tool's path carries a virtual scheme (or the call asks for
``runtime=browser``).  Contents live only as long as the owning process.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from .errors import AgentError

logger = logging.getLogger(__name__)

SCHEMES = ("mem", "vfs")
DEFAULT_SCHEME = "mem"
MAX_READ_CHARS = 512 * 1024

_URI_RE = re.compile(r"^(mem|vfs)://(.*)$", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class VirtualPath:
    scheme: str
    path: str

    @property
    def uri(self) -> str:
        return f"{self.scheme}://{self.path}"


def parse_virtual_uri(raw: Any, default_scheme: str = DEFAULT_SCHEME) -> VirtualPath:
    """Normalize ``raw`` to a ``VirtualPath``; ``..`` segments are rejected."""
    text = str(raw or "").strip()
    if text in ("", ".", "/"):
        text = f"{default_scheme}://"

    match = _URI_RE.match(text)
    if match:
        scheme, rest = match.group(1).lower(), match.group(2)
    else:
        scheme, rest = default_scheme, text

    rest = re.sub(r"/+", "/", rest.replace("\\", "/")).strip("/")
    segments = [s for s in rest.split("/") if s not in ("", ".")]
    if ".." in segments:
        raise AgentError(f"Path traversal is not allowed: {text}", code="E_ARGS")
    return VirtualPath(scheme, "/".join(segments))


def is_virtual_uri(raw: Any) -> bool:
    return bool(_URI_RE.match(str(raw or "").strip()))


class VirtualFileSystem:
    """
    Flat map of uri → text.  Directories are implied by path prefixes.

    Usage:
        vfs = VirtualFileSystem()
        vfs.write("mem://notes/a.txt", "hello")
        vfs.read("mem://notes/a.txt")["content"]
    """

    def __init__(self):
        self._files: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._files)

    def exists(self, path: Any) -> bool:
        return parse_virtual_uri(path).uri in self._files

    def _get(self, target: VirtualPath) -> str:
        if target.uri not in self._files:
            raise AgentError(f"Virtual file not found: {target.uri}", code="E_NOT_FOUND")
        return self._files[target.uri]

    def read(self, path: Any, offset: Optional[int] = None, limit: Optional[int] = None) -> dict:
        target = parse_virtual_uri(path)
        content = self._get(target)
        start = max(0, int(offset or 0))
        count = MAX_READ_CHARS if not limit else max(1, min(MAX_READ_CHARS, int(limit)))
        size = len(content)
        chunk = content[start:start + count] if start < size else ""
        return {
            "path": target.uri,
            "offset": start,
            "limit": count,
            "size": size,
            "truncated": start + len(chunk) < size,
            "content": chunk,
        }

    def write(self, path: Any, content: Any, mode: str = "overwrite") -> dict:
        target = parse_virtual_uri(path)
        if not target.path:
            raise AgentError(f"Cannot write to a scheme root: {target.uri}", code="E_ARGS")
        text = "" if content is None else str(content)
        mode = mode if mode in ("append", "create") else "overwrite"
        existed = target.uri in self._files
        if mode == "create" and existed:
            raise AgentError(f"Virtual file already exists: {target.uri}", code="E_EXISTS")
        if mode == "append":
            self._files[target.uri] = self._files.get(target.uri, "") + text
        else:
            self._files[target.uri] = text
        logger.debug(f"Virtual write {target.uri} ({mode}, {len(text)} chars)")
        return {"path": target.uri, "mode": mode, "created": not existed, "charsWritten": len(text)}

    def edit(self, path: Any, edits: list[dict]) -> dict:
        target = parse_virtual_uri(path)
        original = self._get(target)
        content = original
        replacements = 0
        for i, edit in enumerate(edits):
            old = str(edit.get("old") or "")
            new = str(edit.get("new") or "")
            if not old:
                raise AgentError(f"edits[{i}].old must not be empty", code="E_ARGS")
            count = content.count(old)
            if count == 0:
                raise AgentError(f"edits[{i}].old not found in {target.uri}", code="E_EDIT_NOT_FOUND")
            if count > 1 and edit.get("all") is not True:
                raise AgentError(
                    f"edits[{i}].old appears {count} times in {target.uri}; add context or set all=true",
                    code="E_EDIT_AMBIGUOUS",
                )
            if edit.get("all") is True:
                content = content.replace(old, new)
                replacements += count
            else:
                content = content.replace(old, new, 1)
                replacements += 1
        if content == original:
            raise AgentError(f"Edits produced no change in {target.uri}", code="E_EDIT_NO_CHANGE")
        self._files[target.uri] = content
        return {"path": target.uri, "applied": True, "hunks": len(edits), "replacements": replacements}

    def list(self, prefix: Any = None) -> list[str]:
        """All file uris under ``prefix`` (a scheme root lists the whole scheme)."""
        root = parse_virtual_uri(prefix)
        base = f"{root.uri}/" if root.path else root.uri
        return sorted(uri for uri in self._files if uri == root.uri or uri.startswith(base))

    def delete(self, path: Any) -> bool:
        return self._files.pop(parse_virtual_uri(path).uri, None) is not None
