"""Capability providers serving ``fs.*`` in ``virtual`` mode from a ``VirtualFileSystem``."""

from __future__ import annotations

from typing import Any

from ..core.capabilities import MODE_VIRTUAL, CapabilityProvider, StepInput
from ..core.errors import AgentError
from ..core.virtual_fs import VirtualFileSystem

CAPABILITY_OPS = {
    "fs.read": ("read", "list"),
    "fs.write": ("write",),
    "fs.edit": ("edit",),
}


class VirtualFsProvider(CapabilityProvider):

    mode = MODE_VIRTUAL

    def __init__(self, vfs: VirtualFileSystem, capability: str):
        if capability not in CAPABILITY_OPS:
            raise ValueError(f"virtual fs does not serve {capability}")
        self.vfs = vfs
        self.capability = capability
        self.id = f"virtual-fs:{capability}"

    async def invoke(self, step: StepInput) -> Any:
        op = step.action
        if op not in CAPABILITY_OPS[self.capability]:
            raise AgentError(f"{self.id} cannot run {op!r}", code="E_ARGS")
        args = step.args
        if op == "read":
            return self.vfs.read(args.get("path"), args.get("offset"), args.get("limit"))
        if op == "list":
            return {"files": self.vfs.list(args.get("path"))}
        if op == "write":
            return self.vfs.write(args.get("path"), args.get("content"), str(args.get("mode") or "overwrite"))
        return self.vfs.edit(args.get("path"), list(args.get("edits") or []))


def virtual_fs_providers(vfs: VirtualFileSystem) -> list[VirtualFsProvider]:
    return [VirtualFsProvider(vfs, capability) for capability in CAPABILITY_OPS]
