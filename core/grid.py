"""core/grid.py — Mine tile grid model.

A ``Grid`` is a rectangular ``tiles[y][x]`` array of :class:`Tile` with
a designated entrance.  Only ``floor`` and ``entrance`` tiles can be
walked on or carry rail; everything else (walls, ore, hazards) blocks.

Grids travel through the session document as plain dicts
(``to_dict`` / ``from_dict``) and can be sketched in ASCII for tools
and tests::

    grid = Grid.from_rows([
        "#####",
        "#E..#",
        "###.#",
    ])
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple

from core.constants import TILE_GLYPHS, TRAVERSABLE_TILES
from core.errors import InvalidGrid


class TileType(str, Enum):
    FLOOR = "floor"
    WALL = "wall"
    ENTRANCE = "entrance"
    WALL_ORE = "wall_ore"
    RARE_ORE = "rare_ore"
    TREASURE = "treasure"
    HAZARD = "hazard"
    REINFORCED = "reinforced"


class Position(NamedTuple):
    x: int
    y: int


def pos_key(x: int, y: int) -> str:
    """Storage key for a coordinate, ``"x,y"``."""
    return f"{x},{y}"


def parse_key(key: str) -> Position:
    x, y = key.split(",")
    return Position(int(x), int(y))


def manhattan(a: Position, b: Position) -> int:
    return abs(a[0] - b[0]) + abs(a[1] - b[1])


@dataclass
class Tile:
    type: TileType = TileType.WALL
    has_rail: bool = False

    @property
    def walkable(self) -> bool:
        return self.type.value in TRAVERSABLE_TILES


_GLYPH_FOR = {v: k for k, v in TILE_GLYPHS.items()}


@dataclass
class Grid:
    """Rectangular tile map with an entrance and player positions."""

    width: int
    height: int
    tiles: list[list[Tile]]
    entrance_x: int = 0
    entrance_y: int = 0
    player_positions: dict[str, Position] = field(default_factory=dict)

    # ── Construction ─────────────────────────────────────────────────

    @classmethod
    def from_rows(cls, rows: list[str]) -> "Grid":
        """Build a grid from ASCII rows.  ``E`` marks the entrance."""
        tiles: list[list[Tile]] = []
        entrance: Position | None = None
        for y, row in enumerate(rows):
            line = []
            for x, ch in enumerate(row):
                if ch not in TILE_GLYPHS:
                    raise InvalidGrid(f"unknown tile glyph {ch!r} at {x},{y}")
                tt = TileType(TILE_GLYPHS[ch])
                if tt is TileType.ENTRANCE:
                    entrance = Position(x, y)
                line.append(Tile(tt))
            tiles.append(line)
        height = len(tiles)
        width = len(tiles[0]) if height else 0
        if entrance is None:
            # No marked entrance: first floor tile, row-major
            entrance = next((Position(x, y) for y, line in enumerate(tiles)
                             for x, t in enumerate(line) if t.walkable),
                            Position(0, 0))
        ex, ey = entrance
        grid = cls(width, height, tiles, ex, ey)
        grid.validate()
        return grid

    @classmethod
    def filled(cls, width: int, height: int,
               tile_type: TileType = TileType.FLOOR) -> "Grid":
        tiles = [[Tile(tile_type) for _ in range(width)] for _ in range(height)]
        return cls(width, height, tiles)

    def validate(self) -> None:
        """Raise :class:`InvalidGrid` if the grid breaks its invariants."""
        if self.height != len(self.tiles):
            raise InvalidGrid(f"height {self.height} != {len(self.tiles)} rows")
        for y, row in enumerate(self.tiles):
            if len(row) != self.width:
                raise InvalidGrid(f"row {y} has {len(row)} tiles, "
                                  f"expected {self.width}")
        if self.width == 0 or self.height == 0:
            return
        if not self.in_bounds(self.entrance_x, self.entrance_y):
            raise InvalidGrid(f"entrance {self.entrance_x},{self.entrance_y} "
                              f"outside {self.width}x{self.height}")
        ent = self.tiles[self.entrance_y][self.entrance_x].type
        if ent not in (TileType.ENTRANCE, TileType.FLOOR):
            raise InvalidGrid(f"entrance tile is {ent.value}")

    # ── Queries ──────────────────────────────────────────────────────

    @property
    def entrance(self) -> Position:
        return Position(self.entrance_x, self.entrance_y)

    def in_bounds(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    def tile(self, x: int, y: int) -> Tile | None:
        if not self.in_bounds(x, y):
            return None
        return self.tiles[y][x]

    def is_traversable(self, x: int, y: int) -> bool:
        t = self.tile(x, y)
        return t is not None and t.walkable

    def set_tile(self, x: int, y: int, tile_type: TileType) -> None:
        self.tiles[y][x].type = tile_type

    def rail_positions(self) -> set[Position]:
        return {Position(x, y)
                for y, row in enumerate(self.tiles)
                for x, t in enumerate(row) if t.has_rail}

    # ── Serialization ────────────────────────────────────────────────

    def to_rows(self) -> list[str]:
        return ["".join(_GLYPH_FOR[t.type.value] for t in row)
                for row in self.tiles]

    def to_dict(self) -> dict:
        return {
            "width": self.width,
            "height": self.height,
            "entrance_x": self.entrance_x,
            "entrance_y": self.entrance_y,
            "tiles": [[{"type": t.type.value, "has_rail": t.has_rail}
                       for t in row] for row in self.tiles],
            "player_positions": {pid: {"x": p.x, "y": p.y}
                                 for pid, p in self.player_positions.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Grid":
        tiles = [[Tile(TileType(t["type"]), bool(t.get("has_rail", False)))
                  for t in row] for row in data["tiles"]]
        players = {pid: Position(int(p["x"]), int(p["y"]))
                   for pid, p in data.get("player_positions", {}).items()}
        grid = cls(int(data["width"]), int(data["height"]), tiles,
                   int(data.get("entrance_x", 0)), int(data.get("entrance_y", 0)),
                   players)
        grid.validate()
        return grid
