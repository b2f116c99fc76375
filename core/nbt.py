"""core/nbt.py — NBT snapshot files for mine maps.

The renderer and offline tools read a session's map and rail network
from a compact NBT file instead of the live store.

Structure (TAG_Compound):
  - session: TAG_String
  - width, height: TAG_Int
  - entrance_x, entrance_y: TAG_Int
  - tiles: TAG_Byte_Array (row-major ``TILE_IDS``)
  - rails: TAG_Int_Array (flattened x0, y0, x1, y1, …)
"""
from __future__ import annotations
from pathlib import Path

import nbtlib
from nbtlib import tag

from core.constants import TILE_IDS
from core.grid import Grid, Position, Tile, TileType

_TILE_FOR_ID = {v: k for k, v in TILE_IDS.items()}


def save_mine_nbt(name: str, grid: Grid, rails: list[Position],
                  dir_path: Path | None = None) -> Path:
    """Write *grid* and *rails* to ``<dir_path>/<name>.nbt``."""
    dir_path = Path("snapshots") if dir_path is None else Path(dir_path)
    dir_path.mkdir(parents=True, exist_ok=True)

    flat = [TILE_IDS[t.type.value] for row in grid.tiles for t in row]
    coords: list[int] = []
    for x, y in rails:
        coords.extend((int(x), int(y)))

    root = nbtlib.Compound()
    root["session"] = tag.String(name)
    root["width"] = tag.Int(grid.width)
    root["height"] = tag.Int(grid.height)
    root["entrance_x"] = tag.Int(grid.entrance_x)
    root["entrance_y"] = tag.Int(grid.entrance_y)
    root["tiles"] = tag.ByteArray(flat)
    root["rails"] = tag.IntArray(coords)

    out_path = dir_path / f"{name}.nbt"
    # Remove old file if exists to ensure clean overwrite
    if out_path.exists():
        out_path.unlink()
    nbtlib.File(root).save(out_path)
    return out_path


def load_mine_nbt(path: Path) -> tuple[Grid, list[Position]]:
    """Read a snapshot back.  Rail flags are set on the returned grid."""
    root = nbtlib.load(Path(path))
    w = int(root["width"])
    h = int(root["height"])
    ids = [int(v) for v in root["tiles"]]
    tiles = [[Tile(TileType(_TILE_FOR_ID[ids[y * w + x]])) for x in range(w)]
             for y in range(h)]
    grid = Grid(w, h, tiles, int(root["entrance_x"]), int(root["entrance_y"]))
    grid.validate()

    raw = [int(v) for v in root.get("rails", [])]
    rails = [Position(raw[i], raw[i + 1]) for i in range(0, len(raw) - 1, 2)]
    for x, y in rails:
        t = grid.tile(x, y)
        if t is not None and t.walkable:
            t.has_rail = True
    return grid, rails
