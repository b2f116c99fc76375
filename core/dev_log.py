"""core/dev_log.py — Structured per-session activity log.

Keeps the last few transitions, recoveries, payouts and errors of every
session, each session in its own bounded buffer so a busy inn can't
push a quiet one's history out.  ``get_inn_status`` shows the tail of
a session's buffer to operators.

Usage:
    log = DevLog()
    log.record("chan-1", "inn", "working → break", t=now,
               details={"state_version": 4})

Each entry is a dict:
    {"seq": int, "t": float, "sid": str, "cat": str, "msg": str,
     "details": dict | None}
"""

from __future__ import annotations
import heapq
import itertools
from dataclasses import dataclass, field


@dataclass
class DevLog:
    """Bounded activity buffers keyed by session id."""

    max_per_session: int = 100
    # If non-empty, only these categories are recorded.
    cat_filter: set[str] = field(default_factory=set)
    muted: bool = False
    _sessions: dict[str, list[dict]] = field(default_factory=dict)
    _seq: itertools.count = field(default_factory=itertools.count, repr=False)

    def record(self, sid: str, cat: str, msg: str, *,
               t: float = 0.0, details: dict | None = None) -> dict | None:
        if self.muted or (self.cat_filter and cat not in self.cat_filter):
            return None
        entry = {"seq": next(self._seq), "t": t, "sid": sid, "cat": cat,
                 "msg": msg, "details": details}
        buf = self._sessions.setdefault(sid, [])
        buf.append(entry)
        if len(buf) > self.max_per_session:
            del buf[:len(buf) - self.max_per_session]
        return entry

    def forget(self, sid: str) -> None:
        """Drop a deleted session's history."""
        self._sessions.pop(sid, None)

    def clear(self) -> None:
        self._sessions.clear()

    # ── Queries ──────────────────────────────────────────────────────

    def for_session(self, sid: str, n: int = 20) -> list[dict]:
        return self._sessions.get(sid, [])[-n:]

    def recent(self, n: int = 50) -> list[dict]:
        """Newest *n* entries across all sessions, oldest first."""
        merged = heapq.merge(*self._sessions.values(), key=lambda e: e["seq"])
        return list(merged)[-n:]

    def for_cat(self, cat: str, n: int = 50) -> list[dict]:
        return [e for e in self.recent(len(self)) if e["cat"] == cat][-n:]

    def __len__(self) -> int:
        return sum(len(buf) for buf in self._sessions.values())
