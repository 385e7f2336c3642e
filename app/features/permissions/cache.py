"""
In-process cache of resolved permission maps.

Entries are keyed by (organization_id, role) and expire after a fixed TTL.
The plan an entry was resolved for is stored with it; a lookup for a different
plan is treated as a miss so a plan change never serves stale presets.
"""
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from app.core import config
from app.utils import get_logger


log = get_logger(__name__)

CacheKey = Tuple[str, str]


@dataclass
class _Entry:
    value: object
    plan: str
    expires_at: float


class PermissionCache:
    """TTL cache for EffectivePermissions keyed by (organization, role)."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, _Entry] = {}
        self.hits = 0
        self.misses = 0

    def get(self, organization_id: str, role: str, plan: str):
        key = (organization_id, role)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            self.misses += 1
            log.debug("Permission cache expired for org=%s role=%s", organization_id, role)
            return None
        if entry.plan != plan:
            self.misses += 1
            log.debug("Permission cache plan changed for org=%s role=%s: %s -> %s",
                      organization_id, role, entry.plan, plan)
            return None
        self.hits += 1
        return entry.value

    def set(self, organization_id: str, role: str, plan: str, value) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries[(organization_id, role)] = _Entry(
            value=value,
            plan=plan,
            expires_at=self._clock() + self.ttl_seconds,
        )

    def invalidate(self, organization_id: Optional[str] = None, role: Optional[str] = None) -> int:
        """
        Drop cached entries and return how many were removed.

        - no arguments: everything
        - organization_id: every role of that organization
        - organization_id and role: a single entry
        - role only: that role in every organization
        """
        if organization_id is None and role is None:
            removed = len(self._entries)
            self._entries.clear()
        else:
            doomed = [
                key for key in self._entries
                if (organization_id is None or key[0] == organization_id)
                and (role is None or key[1] == role)
            ]
            for key in doomed:
                del self._entries[key]
            removed = len(doomed)
        log.info("Permission cache invalidated org=%s role=%s removed=%d", organization_id, role, removed)
        return removed

    def stats(self) -> dict:
        return {
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "ttl_seconds": self.ttl_seconds,
        }

    def reset(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0


permission_cache = PermissionCache(ttl_seconds=config.PERMISSION_CACHE_TTL_SECONDS)
