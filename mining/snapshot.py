"""mining/snapshot.py — Read-only map + rail snapshots for renderers."""

from __future__ import annotations
from pathlib import Path

from core.nbt import load_mine_nbt, save_mine_nbt
from core.session import load_grid
from core.grid import Grid, Position
from mining.rail_store import RailStore, apply_rails_to_grid, get_all_rail_positions


async def export_mine_snapshot(rail_store: RailStore, session_id: str,
                               dir_path: Path | None = None) -> Path | None:
    """Dump a session's map and rails to NBT.  ``None`` without a map."""
    grid = await load_grid(rail_store.store, session_id)
    if grid is None:
        return None
    rails = await rail_store.get_rails_data(session_id)
    apply_rails_to_grid(grid, rails)
    path = save_mine_nbt(session_id, grid, get_all_rail_positions(rails), dir_path)
    print(f"[SNAPSHOT] {session_id} → {path}")
    return path


def read_mine_snapshot(path: Path) -> tuple[Grid, list[Position]]:
    return load_mine_nbt(path)
