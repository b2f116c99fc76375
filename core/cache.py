"""core/cache.py — Per-session read caches.

Expensive derived views (visibility maps, rendered shop tables, AI
dialogue pools) are cached per session.  Anything that mutates a
session calls ``invalidate(session_id)`` on the caches it was handed;
there is no process-global cache.
"""

from __future__ import annotations
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol


class Invalidates(Protocol):
    def invalidate(self, session_id: str) -> None: ...


@dataclass
class SessionCache:
    """Small TTL cache of ``(session_id, key) → value``."""

    name: str = "cache"
    ttl: float = 60.0
    clock: Callable[[], float] = time.time
    _entries: dict[tuple[str, str], tuple[float, Any]] = field(default_factory=dict)
    # Stats
    hits: int = 0
    misses: int = 0
    invalidations: int = 0

    def get(self, session_id: str, key: str = "", default=None):
        entry = self._entries.get((session_id, key))
        if entry is None or self.clock() - entry[0] > self.ttl:
            self.misses += 1
            return default
        self.hits += 1
        return entry[1]

    def put(self, session_id: str, value, key: str = "") -> None:
        self._entries[(session_id, key)] = (self.clock(), value)

    def invalidate(self, session_id: str) -> None:
        stale = [k for k in self._entries if k[0] == session_id]
        for k in stale:
            del self._entries[k]
        self.invalidations += 1

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
