"""
Tab Lease Manager — time-boxed exclusive leases on environment targets.

A lease keeps two runs from driving the same tab at once:
  - One owner per target; the same owner renews its own lease
  - Leases expire after a TTL so a crashed run cannot wedge a tab
  - ``lease()`` is an async context manager that always releases
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

from .errors import LeaseError

logger = logging.getLogger(__name__)

DEFAULT_LEASE_TTL_MS = 30_000


@dataclass
class LeaseInfo:
    """Metadata about one held lease."""
    target_id: str
    owner: str
    acquired_at: float = field(default_factory=time.time)
    expires_at: float = 0.0

    def is_expired(self, now: float) -> bool:
        return self.expires_at > 0 and now > self.expires_at

    def to_dict(self) -> dict:
        return {
            "target_id": self.target_id,
            "owner": self.owner,
            "acquired_at": self.acquired_at,
            "expires_at": self.expires_at,
        }


@dataclass
class LeaseResult:
    ok: bool
    reason: str = ""            # held_by_other on refusal
    holder: str = ""
    expires_at: float = 0.0


class TabLeaseManager:
    """
    Usage:
        leases = TabLeaseManager()

        async with leases.lease("tab:12", owner="session-1", ttl_ms=15000):
            ...  # drive the tab

        result = leases.acquire("tab:12", "session-2", 15000)
        if not result.ok:
            print(f"tab busy, held by {result.holder}")
    """

    def __init__(self, default_ttl_ms: int = DEFAULT_LEASE_TTL_MS, clock: Callable[[], float] = time.time):
        self.default_ttl_ms = default_ttl_ms
        self._clock = clock
        self._leases: dict[str, LeaseInfo] = {}

    def acquire(self, target_id: str, owner: str, ttl_ms: Optional[int] = None) -> LeaseResult:
        target_id = str(target_id)
        now = self._clock()
        existing = self._leases.get(target_id)
        if existing and existing.is_expired(now):
            logger.debug(f"Lease expired: {target_id} held by {existing.owner}")
            del self._leases[target_id]
            existing = None

        if existing and existing.owner != owner:
            logger.debug(f"Lease blocked: {target_id} held by {existing.owner}")
            return LeaseResult(ok=False, reason="held_by_other", holder=existing.owner,
                               expires_at=existing.expires_at)

        ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms
        info = LeaseInfo(target_id=target_id, owner=owner, acquired_at=now,
                         expires_at=now + max(1, ttl) / 1000)
        self._leases[target_id] = info
        logger.debug(f"Lease acquired: {target_id} by {owner}")
        return LeaseResult(ok=True, holder=owner, expires_at=info.expires_at)

    def release(self, target_id: str, owner: str) -> bool:
        """Release ``owner``'s lease; returns False when it holds none."""
        target_id = str(target_id)
        existing = self._leases.get(target_id)
        if existing is None or existing.owner != owner:
            return False
        del self._leases[target_id]
        logger.debug(f"Lease released: {target_id} by {owner}")
        return True

    def holder(self, target_id: str) -> Optional[str]:
        existing = self._leases.get(str(target_id))
        if existing is None or existing.is_expired(self._clock()):
            return None
        return existing.owner

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [t for t, info in self._leases.items() if info.is_expired(now)]
        for target_id in expired:
            del self._leases[target_id]
        return len(expired)

    def active_leases(self) -> list[LeaseInfo]:
        self.cleanup_expired()
        return list(self._leases.values())

    @asynccontextmanager
    async def lease(self, target_id: str, owner: str, ttl_ms: Optional[int] = None) -> AsyncIterator[LeaseResult]:
        result = self.acquire(target_id, owner, ttl_ms)
        if not result.ok:
            raise LeaseError(
                f"Target {target_id} is leased by {result.holder}",
                target_id=str(target_id),
                holder=result.holder,
            )
        try:
            yield result
        finally:
            self.release(target_id, owner)
