"""mining/coordinates.py — Keep stored coordinates valid when the map grows.

Mine maps expand around their centre, which moves the entrance.  The
stored ``map_dimensions`` remember the last entrance seen; when the
live grid's entrance differs, every stored rail moves by the same
delta so the network stays where it was relative to the rock.
"""

from __future__ import annotations
import time
from dataclasses import dataclass

from core.grid import Grid
from core.store import SessionStore, Update, get_path
from mining.rail_store import RailStore

DIMENSIONS_PATH = "game_data.map_dimensions"


@dataclass
class MapChange:
    updated: bool = False
    shift_x: int = 0
    shift_y: int = 0
    rails_moved: int = 0


def dimensions_of(grid: Grid, now: float) -> dict:
    return {"width": grid.width, "height": grid.height,
            "entrance_x": grid.entrance_x, "entrance_y": grid.entrance_y,
            "last_updated": now}


async def store_map_dimensions(store: SessionStore, session_id: str,
                               grid: Grid, now: float | None = None) -> None:
    now = time.time() if now is None else now
    await store.find_one_and_update(
        session_id, None, Update(set={DIMENSIONS_PATH: dimensions_of(grid, now)}))


async def check_and_handle_map_changes(rail_store: RailStore, session_id: str,
                                       grid: Grid) -> MapChange:
    """Shift stored rails if the entrance moved since the last check."""
    store = rail_store.store
    doc = await store.find_one(session_id)
    stored = get_path(doc, DIMENSIONS_PATH) if doc else None
    now = rail_store.clock()

    if not stored:
        await store_map_dimensions(store, session_id, grid, now)
        return MapChange()

    if (stored["width"], stored["height"],
            stored["entrance_x"], stored["entrance_y"]) == (
            grid.width, grid.height, grid.entrance_x, grid.entrance_y):
        return MapChange()

    dx = grid.entrance_x - stored["entrance_x"]
    dy = grid.entrance_y - stored["entrance_y"]
    print(f"[COORD] {session_id}: map {stored['width']}x{stored['height']} → "
          f"{grid.width}x{grid.height}, entrance moved by ({dx}, {dy})")
    moved = await rail_store.shift_rails(session_id, dx, dy)
    await store_map_dimensions(store, session_id, grid, now)
    return MapChange(True, dx, dy, moved)
