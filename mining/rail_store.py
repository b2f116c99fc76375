"""mining/rail_store.py — Persistent per-session rail sets.

Rails live at ``game_data.rails.positions`` in the session document,
keyed ``"x,y"``, separate from the map's own tile array so mining
operations that rewrite the map never clobber the rail network::

    {"positions": {"4,4": {"x": 4, "y": 4, "timestamp": 1700000000.0}}}

The set only grows through merges and only shrinks through an explicit
clear (or the single-tile ``remove_rail`` admin call).  Merging is an
additive union and idempotent: re-merging a path changes nothing.

Pure helpers (``count_rails``, ``has_rail`` …) work on a
:class:`RailsData` snapshot and never touch the store.
"""

from __future__ import annotations
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

from core.errors import Contention
from core.grid import Grid, Position, parse_key, pos_key
from core.store import SessionStore, Update, get_path

RAILS_PATH = "game_data.rails"
POSITIONS_PATH = "game_data.rails.positions"

_SHIFT_ATTEMPTS = 3


@dataclass
class RailsData:
    positions: dict[str, dict] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict | None) -> "RailsData":
        if not data:
            return cls()
        return cls(dict(data.get("positions") or {}))

    def to_dict(self) -> dict:
        return {"positions": dict(self.positions)}

    @classmethod
    def from_positions(cls, positions: Iterable[Position],
                       timestamp: float = 0.0) -> "RailsData":
        return cls({pos_key(x, y): {"x": x, "y": y, "timestamp": timestamp}
                    for x, y in positions})


# ── Pure helpers ─────────────────────────────────────────────────────

def count_rails(rails: RailsData | None) -> int:
    return len(rails.positions) if rails else 0


def has_rail(rails: RailsData | None, x: int, y: int) -> bool:
    return bool(rails) and pos_key(x, y) in rails.positions


def get_all_rail_positions(rails: RailsData | None) -> list[Position]:
    if not rails:
        return []
    return [Position(int(r["x"]), int(r["y"])) for r in rails.positions.values()]


def get_rail_connections(rails: RailsData | None, x: int, y: int) -> dict[str, bool]:
    """Which cardinal neighbours carry rail (for the renderer)."""
    return {
        "north": has_rail(rails, x, y - 1),
        "south": has_rail(rails, x, y + 1),
        "east": has_rail(rails, x + 1, y),
        "west": has_rail(rails, x - 1, y),
    }


def apply_rails_to_grid(grid: Grid, rails: RailsData) -> int:
    """Mirror the stored rails onto ``Tile.has_rail``.

    The store is authoritative.  Rails on tiles that are no longer
    traversable stay stored but aren't flagged.  Returns flagged count.
    """
    flagged = 0
    for y, row in enumerate(grid.tiles):
        for x, tile in enumerate(row):
            tile.has_rail = has_rail(rails, x, y) and tile.walkable
            flagged += tile.has_rail
    return flagged


# ── Store-backed operations ──────────────────────────────────────────

class RailStore:
    """Rail set persistence for every session in a :class:`SessionStore`."""

    def __init__(self, store: SessionStore,
                 clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.clock = clock

    async def get_rails_data(self, session_id: str) -> RailsData:
        doc = await self.store.find_one(session_id)
        if not doc:
            return RailsData()
        return RailsData.from_dict(get_path(doc, RAILS_PATH))

    async def set_rails_data(self, session_id: str, rails: RailsData) -> bool:
        res = await self.store.find_one_and_update(
            session_id, None, Update(set={RAILS_PATH: rails.to_dict()}))
        return res is not None

    async def merge_rail_path(self, session_id: str,
                              path: Iterable[Position]) -> int:
        """Add every tile of *path* that isn't railed yet.

        One atomic update that only writes absent keys, so concurrent
        merges union cleanly.  Returns the number of rails added.
        """
        now = self.clock()
        new: dict[str, dict] = {}
        for x, y in path:
            new[f"{POSITIONS_PATH}.{pos_key(x, y)}"] = {
                "x": x, "y": y, "timestamp": now}
        if not new:
            return 0
        before = await self.store.find_one_and_update(
            session_id, None, Update(set_default=new), return_before=True)
        if before is None:
            return 0
        existing = get_path(before, POSITIONS_PATH) or {}
        added = sum(1 for k in new if k.rsplit(".", 1)[1] not in existing)
        if added:
            print(f"[RAILS] {session_id}: merged {added} new rail(s)")
        return added

    # Both historical entry points are the same additive union.
    build_rail_path = merge_rail_path

    async def add_rail(self, session_id: str, x: int, y: int, **info) -> bool:
        entry = {"x": x, "y": y, "timestamp": self.clock(), **info}
        res = await self.store.find_one_and_update(
            session_id, None,
            Update(set={f"{POSITIONS_PATH}.{pos_key(x, y)}": entry}))
        return res is not None

    async def remove_rail(self, session_id: str, x: int, y: int) -> bool:
        key = f"{POSITIONS_PATH}.{pos_key(x, y)}"
        before = await self.store.find_one_and_update(
            session_id, None, Update(unset=[key]), return_before=True)
        return before is not None and get_path(before, key) is not None

    async def clear_all_rails(self, session_id: str) -> int:
        """Drop every rail.  Returns how many were cleared."""
        before = await self.store.find_one_and_update(
            session_id, None, Update(set={POSITIONS_PATH: {}}),
            return_before=True)
        if before is None:
            return 0
        cleared = len(get_path(before, POSITIONS_PATH) or {})
        print(f"[RAILS] {session_id}: cleared {cleared} rail(s)")
        return cleared

    async def shift_rails(self, session_id: str, dx: int, dy: int) -> int:
        """Translate every rail by ``(dx, dy)`` after a map expansion.

        Compare-and-set against the set that was read, retried a few
        times if a merge lands in between.  Returns rails shifted;
        raises :class:`Contention` when every attempt loses.
        """
        if dx == 0 and dy == 0:
            return 0
        for _ in range(_SHIFT_ATTEMPTS):
            doc = await self.store.find_one(session_id)
            if not doc:
                return 0
            seen = get_path(doc, POSITIONS_PATH) or {}
            if not seen:
                return 0
            shifted = {}
            for rail in seen.values():
                nx, ny = int(rail["x"]) + dx, int(rail["y"]) + dy
                shifted[pos_key(nx, ny)] = {**rail, "x": nx, "y": ny}
            res = await self.store.find_one_and_update(
                session_id,
                lambda d, seen=seen: (get_path(d, POSITIONS_PATH) or {}) == seen,
                Update(set={POSITIONS_PATH: shifted}))
            if res is not None:
                print(f"[RAILS] {session_id}: shifted {len(shifted)} rail(s) "
                      f"by ({dx}, {dy})")
                return len(shifted)
        print(f"[RAILS] {session_id}: shift ({dx}, {dy}) lost the race "
              f"{_SHIFT_ATTEMPTS} times, giving up")
        raise Contention(f"rails of {session_id} kept changing during shift")

    async def export_rail_data(self, session_id: str) -> dict:
        rails = await self.get_rails_data(session_id)
        return {
            "session_id": session_id,
            "rail_count": count_rails(rails),
            "positions": [{"x": p.x, "y": p.y}
                          for p in get_all_rail_positions(rails)],
            "raw": rails.to_dict(),
        }

    async def import_rail_data(self, session_id: str, data: dict) -> bool:
        """Restore from ``export_rail_data`` output or a raw rails dict."""
        raw = data.get("raw", data)
        return await self.set_rails_data(session_id, RailsData.from_dict(raw))


def rails_from_keys(keys: Iterable[str]) -> RailsData:
    return RailsData.from_positions(parse_key(k) for k in keys)
