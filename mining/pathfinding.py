"""mining/pathfinding.py — A* pathfinding on the mine grid.

Movement model
--------------
Four-directional, unit cost per step.  Only ``floor`` and ``entrance``
tiles are traversable; walls, ore, hazards and reinforced rock block.
The Manhattan heuristic is admissible and consistent for this model,
so the first time the goal is popped off the frontier the path is
optimal.

Public API
----------
``find_path(grid, start, end)`` → ``list[Position]`` or ``None``
``endpoint_problem(grid, pos)`` → reason string or ``None``
"""

from __future__ import annotations
import heapq
from typing import Iterator

from core.grid import Grid, Position, Tile, manhattan


# ── 4-directional offsets (N, E, S, W) ───────────────────────────────

_DIRS = ((0, -1), (1, 0), (0, 1), (-1, 0))


def is_walkable(tile: Tile | None) -> bool:
    return tile is not None and tile.walkable


def in_bounds(grid: Grid, pos: Position) -> bool:
    return grid.in_bounds(pos[0], pos[1])


def neighbors(pos: Position, width: int, height: int) -> Iterator[Position]:
    """In-bounds cardinal neighbours of *pos*, N/E/S/W order."""
    x, y = pos
    for dx, dy in _DIRS:
        nx, ny = x + dx, y + dy
        if 0 <= nx < width and 0 <= ny < height:
            yield Position(nx, ny)


def endpoint_problem(grid: Grid, pos: Position) -> str | None:
    """Why *pos* can't be a path endpoint, or ``None`` if it can."""
    if not in_bounds(grid, pos):
        return "out of bounds"
    if not grid.is_traversable(pos[0], pos[1]):
        return "not traversable"
    return None


# ── A* search ────────────────────────────────────────────────────────

def find_path(grid: Grid, start: Position,
              end: Position) -> list[Position] | None:
    """A* pathfind between two tiles.

    Returns the optimal path inclusive of both endpoints, ``[start]``
    when start equals end, or ``None`` when either endpoint is invalid
    or the goal is unreachable.  Pure: the grid is not touched.
    """
    start = Position(*start)
    end = Position(*end)

    # Invalid endpoints fail before any search
    if endpoint_problem(grid, start) or endpoint_problem(grid, end):
        return None

    # Trivial case
    if start == end:
        return [start]

    tiles = grid.tiles
    w, h = grid.width, grid.height

    # Open set: (f_score, seq, node).  seq keeps pops stable on ties.
    seq = 0
    open_set: list[tuple[int, int, Position]] = [(manhattan(start, end), seq, start)]
    g_score: dict[Position, int] = {start: 0}
    came_from: dict[Position, Position] = {}
    closed: set[Position] = set()

    while open_set:
        _f, _s, node = heapq.heappop(open_set)

        if node in closed:
            continue
        closed.add(node)

        if node == end:
            # ── Reconstruct path ─────────────────────────────────────
            path = [node]
            while node in came_from:
                node = came_from[node]
                path.append(node)
            path.reverse()
            return path

        new_g = g_score[node] + 1
        for nb in neighbors(node, w, h):
            if nb in closed:
                continue
            if not tiles[nb.y][nb.x].walkable:
                continue
            if new_g < g_score.get(nb, 1 << 30):
                g_score[nb] = new_g
                came_from[nb] = node
                seq += 1
                heapq.heappush(open_set, (new_g + manhattan(nb, end), seq, nb))

    return None  # no path found
