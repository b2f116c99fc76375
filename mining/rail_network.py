"""mining/rail_network.py — Rail network planning and connectivity.

Where should new track start?  Any stored rail that can reach the
target beats the entrance, even a much closer entrance: extending the
existing network is always preferred over laying a second line.

Nearest-rail search runs one A* per stored rail (O(R · pathfind)).
That is fine for the few hundred rails a session accumulates; a
union-find over rail components plus one multi-source search would be
the way to scale it.

Connectivity is rail-to-rail adjacency only.  Two rails separated by
open floor are different networks.
"""

from __future__ import annotations
import math
from dataclasses import dataclass

from core.grid import Grid, Position, pos_key
from mining.pathfinding import find_path
from mining.rail_store import RailStore, RailsData, get_all_rail_positions, has_rail


@dataclass
class ClosestRail:
    position: Position
    distance: int
    path: list[Position]


@dataclass
class StartPoint:
    position: Position
    is_rail: bool
    is_entrance: bool
    path: list[Position] | None
    distance: float
    error: str | None = None


# ── Pure planning ────────────────────────────────────────────────────

def closest_reachable_rail(grid: Grid, target: Position,
                           rails: RailsData) -> ClosestRail | None:
    """Rail with the shortest path to *target*; first found wins ties."""
    best: ClosestRail | None = None
    for rail in get_all_rail_positions(rails):
        path = find_path(grid, rail, target)
        if path and (best is None or len(path) < best.distance):
            best = ClosestRail(rail, len(path), path)
    return best


def optimal_rail_start(grid: Grid, target: Position,
                       rails: RailsData) -> StartPoint:
    closest = closest_reachable_rail(grid, target, rails)
    if closest:
        return StartPoint(closest.position, True, False,
                          closest.path, closest.distance)

    entrance = grid.entrance
    path = find_path(grid, entrance, target)
    if not path:
        return StartPoint(entrance, False, True, None, math.inf,
                          error="No path found from entrance to target")
    return StartPoint(entrance, False, True, path, len(path))


def get_connected_rails(rails: RailsData, start: Position) -> set[Position]:
    """Flood fill over rail-to-rail adjacency from *start*."""
    visited: set[Position] = set()
    to_visit = [Position(*start)]
    while to_visit:
        cur = to_visit.pop()
        if cur in visited:
            continue
        visited.add(cur)
        x, y = cur
        for nb in (Position(x, y - 1), Position(x + 1, y),
                   Position(x, y + 1), Position(x - 1, y)):
            if nb not in visited and has_rail(rails, nb.x, nb.y):
                to_visit.append(nb)
    return visited


def rail_network_stats(rails: RailsData) -> dict:
    all_rails = get_all_rail_positions(rails)
    if not all_rails:
        return {"total_rails": 0, "networks": 0, "largest_network": 0,
                "isolated": 0, "network_sizes": []}

    visited: set[Position] = set()
    sizes: list[int] = []
    for rail in all_rails:
        if rail in visited:
            continue
        network = get_connected_rails(rails, rail)
        visited |= network
        sizes.append(len(network))

    sizes.sort(reverse=True)
    return {
        "total_rails": len(all_rails),
        "networks": len(sizes),
        "largest_network": sizes[0],
        "isolated": sum(1 for s in sizes if s == 1),
        "network_sizes": sizes,
    }


def path_connection(rails: RailsData, path: list[Position]) -> dict:
    """First point where *path* touches or sits next to the network."""
    for x, y in path or ():
        for cx, cy in ((x, y), (x, y - 1), (x + 1, y), (x, y + 1), (x - 1, y)):
            if has_rail(rails, cx, cy):
                return {"connects": True, "connection_point": Position(cx, cy)}
    return {"connects": False, "connection_point": None}


# ── Store-backed planner ─────────────────────────────────────────────

class RailNetworkPlanner:
    """Planning queries against a session's stored rails."""

    def __init__(self, rail_store: RailStore) -> None:
        self.rails = rail_store

    async def find_closest_reachable_rail(self, grid: Grid, target: Position,
                                          session_id: str) -> ClosestRail | None:
        rails = await self.rails.get_rails_data(session_id)
        return closest_reachable_rail(grid, Position(*target), rails)

    async def find_optimal_rail_start(self, grid: Grid, target: Position,
                                      session_id: str) -> StartPoint:
        rails = await self.rails.get_rails_data(session_id)
        start = optimal_rail_start(grid, Position(*target), rails)
        if start.is_rail:
            print(f"[RAILS] {session_id}: closest rail {pos_key(*start.position)} "
                  f"at distance {start.distance}")
        elif start.path:
            print(f"[RAILS] {session_id}: no reachable rail, starting from entrance")
        return start

    async def check_rail_network_connection(self, session_id: str,
                                            path: list[Position]) -> dict:
        rails = await self.rails.get_rails_data(session_id)
        return path_connection(rails, path)

    async def get_rail_network_stats(self, session_id: str) -> dict:
        return rail_network_stats(await self.rails.get_rails_data(session_id))
