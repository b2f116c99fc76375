"""mining/build.py — Lay rail from the network (or entrance) to a player.

Cost is iron per tile placed.  The tile the path starts on is already
rail (or the entrance), so a path of ``n`` tiles costs ``n - 1``.  A
player who can't cover the whole run gets as many tiles as their iron
buys, starting from the network end.
"""

from __future__ import annotations
from dataclasses import dataclass, field

from core.cache import Invalidates
from core.constants import RAIL_IRON_PER_TILE
from core.errors import InvalidInput
from core.grid import Grid, Position
from core.session import load_grid, save_grid
from core.tuning import get as _tun
from mining.coordinates import check_and_handle_map_changes
from mining.pathfinding import endpoint_problem, find_path
from mining.rail_network import RailNetworkPlanner
from mining.rail_store import RailStore, apply_rails_to_grid


@dataclass
class BuildResult:
    built_count: int = 0
    iron_cost: int = 0
    started_from: str = ""            # "rail" | "entrance" | "position"
    start: Position | None = None
    path: list[Position] = field(default_factory=list)
    partial: bool = False
    iron_still_needed: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RailBuilder:
    """Plans and commits rail runs for one store."""

    def __init__(self, rail_store: RailStore,
                 caches: list[Invalidates] | None = None) -> None:
        self.rails = rail_store
        self.planner = RailNetworkPlanner(rail_store)
        self.caches = list(caches or [])

    @property
    def cost_per_tile(self) -> int:
        return int(_tun("mining.rails", "iron_per_tile", RAIL_IRON_PER_TILE))

    async def _load(self, session_id: str, *targets: Position) -> Grid:
        grid = await load_grid(self.rails.store, session_id)
        if grid is None:
            raise InvalidInput(f"session {session_id} has no mine map")
        for pos in targets:
            problem = endpoint_problem(grid, pos)
            if problem:
                raise InvalidInput(f"position {pos.x},{pos.y} is {problem}")
        return grid

    async def build_rails_to_player(self, session_id: str,
                                    player_position: Position,
                                    iron_available: int | None = None) -> BuildResult:
        """Extend the rail network to *player_position*.

        ``iron_available=None`` means unlimited.  Raises
        :class:`InvalidInput` for an out-of-bounds or blocked position;
        an unreachable position comes back as ``error``.
        """
        target = Position(*player_position)
        grid = await self._load(session_id, target)
        await check_and_handle_map_changes(self.rails, session_id, grid)

        start = await self.planner.find_optimal_rail_start(grid, target, session_id)
        if not start.path:
            return BuildResult(started_from="entrance", start=start.position,
                               error="No valid path found")
        origin = "rail" if start.is_rail else "entrance"
        return await self._commit(session_id, grid, start.path, origin,
                                  iron_available)

    async def build_rails_for_player(self, session_id: str, player_id: str,
                                     iron_available: int | None = None) -> BuildResult:
        """Extend the network to where *player_id* stands on the stored map."""
        grid = await self._load(session_id)
        pos = grid.player_positions.get(player_id)
        if pos is None:
            raise InvalidInput(f"player {player_id} is not in mine {session_id}")
        return await self.build_rails_to_player(session_id, pos, iron_available)

    async def build_rails_between(self, session_id: str, start: Position,
                                  end: Position,
                                  iron_available: int | None = None) -> BuildResult:
        """Debug variant: lay rail along the shortest path start → end."""
        start, end = Position(*start), Position(*end)
        grid = await self._load(session_id, start, end)
        path = find_path(grid, start, end)
        if not path:
            return BuildResult(started_from="position", start=start,
                               error="No valid path found")
        return await self._commit(session_id, grid, path, "position",
                                  iron_available)

    async def _commit(self, session_id: str, grid: Grid, path: list[Position],
                      origin: str, iron_available: int | None) -> BuildResult:
        per_tile = self.cost_per_tile
        needed = len(path) - 1
        cost = needed * per_tile
        result = BuildResult(started_from=origin, start=path[0])

        if iron_available is not None and iron_available < cost:
            affordable = iron_available // per_tile if per_tile else needed
            if affordable <= 0:
                result.iron_cost = cost
                result.iron_still_needed = cost
                result.error = (f"Need {cost} iron to build here, "
                                f"have {iron_available}")
                return result
            path = path[:affordable + 1]
            result.partial = True
            result.iron_still_needed = cost - affordable * per_tile
            needed = affordable
            cost = affordable * per_tile

        await self.rails.merge_rail_path(session_id, path)
        rails = await self.rails.get_rails_data(session_id)
        apply_rails_to_grid(grid, rails)
        await save_grid(self.rails.store, session_id, grid)
        for cache in self.caches:
            cache.invalidate(session_id)

        result.built_count = needed
        result.iron_cost = cost
        result.path = path
        print(f"[BUILD] {session_id}: {needed} rail(s) from {origin} "
              f"{path[0].x},{path[0].y} for {cost} iron"
              + (" (partial)" if result.partial else ""))
        return result
