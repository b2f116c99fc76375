"""core/session.py — Session document layout and grid access.

A session document looks like::

    {"session_id": "chan-1",
     "next_trigger": 1700000000.0,
     "game_data": {"gamemode": "mining", "power": 3,
                   "map": {...Grid.to_dict()...},
                   "rails": {"positions": {"4,4": {...}}}}}

Inn fields under ``game_data`` are owned by ``inn.controller``; rail
fields by ``mining.rail_store``.
"""

from __future__ import annotations
import time

from core.constants import MAX_POWER, MIN_POWER, MODE_MINING
from core.errors import InvalidInput
from core.grid import Grid
from core.store import SessionStore, Update


def new_session_doc(session_id: str, gamemode: str = MODE_MINING,
                    power: int = 1, grid: Grid | None = None,
                    now: float | None = None) -> dict:
    if not MIN_POWER <= power <= MAX_POWER:
        raise InvalidInput(f"power {power} outside {MIN_POWER}..{MAX_POWER}")
    now = time.time() if now is None else now
    game_data: dict = {"gamemode": gamemode, "power": power}
    if grid is not None:
        game_data["map"] = grid.to_dict()
    return {"session_id": session_id, "next_trigger": now,
            "game_data": game_data}


async def create_session(store: SessionStore, session_id: str, **kwargs) -> bool:
    """Insert a fresh session document.  ``False`` if the id is taken."""
    return await store.insert(session_id, new_session_doc(session_id, **kwargs))


async def load_grid(store: SessionStore, session_id: str) -> Grid | None:
    doc = await store.find_one(session_id)
    if not doc:
        return None
    data = doc.get("game_data", {}).get("map")
    return Grid.from_dict(data) if data else None


async def save_grid(store: SessionStore, session_id: str, grid: Grid) -> bool:
    res = await store.find_one_and_update(
        session_id, None, Update(set={"game_data.map": grid.to_dict()}))
    return res is not None
