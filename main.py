"""
main.py — Local runner

1. Open the session store (JSON files under saves/sessions)
2. Create a demo mine and an inn session if they don't exist
3. Lay rails from the network to where the miner stands and print the mine
4. Drive the inn through simulated time, one driver tick at a time
5. Print the inn status and everyone's wallet

Run:  python main.py --minutes 40 --workers 3
"""

from __future__ import annotations
import argparse
import asyncio
import random

from core.constants import MODE_INNKEEPER
from core.grid import Grid, Position
from core.session import create_session, load_grid, save_grid
from core.store import JsonFileStore
from inn.collaborators import Ledger, StaticPresence, StaticStats
from inn.controller import InnCycleController
from inn.events import EventGenerator
from inn.scheduler import CycleDriver
from mining.build import RailBuilder
from mining.rail_network import RailNetworkPlanner
from mining.rail_store import RailStore
from mining.snapshot import export_mine_snapshot

DEMO_MINE = [
    "....#.....",
    ".E..#..o..",
    "....#.....",
    "..........",
    "######.###",
    "..........",
    "...*......",
]

MINE_ID = "mine-demo"
INN_ID = "inn-demo"


class SimClock:
    def __init__(self, start: float) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t


def render(grid: Grid) -> str:
    rows = grid.to_rows()
    out = []
    for y, row in enumerate(rows):
        out.append("".join("=" if grid.tiles[y][x].has_rail else ch
                           for x, ch in enumerate(row)))
    return "\n".join(out)


async def run_mine(store: JsonFileStore, target: Position, iron: int | None) -> None:
    grid = Grid.from_rows(DEMO_MINE)
    grid.player_positions["miner"] = target
    if not await create_session(store, MINE_ID, grid=grid):
        grid = await load_grid(store, MINE_ID)
        grid.player_positions["miner"] = target
        await save_grid(store, MINE_ID, grid)
    rails = RailStore(store)
    result = await RailBuilder(rails).build_rails_for_player(MINE_ID, "miner", iron)
    if not result.ok:
        print(f"[MAIN] no rails built: {result.error}")
    else:
        print(f"[MAIN] built {result.built_count} rail(s) from the "
              f"{result.started_from} for {result.iron_cost} iron"
              + (f", {result.iron_still_needed} more needed" if result.partial else ""))
    grid = await load_grid(store, MINE_ID)
    print(render(grid))
    print(f"[MAIN] network: {await RailNetworkPlanner(rails).get_rail_network_stats(MINE_ID)}")
    await export_mine_snapshot(rails, MINE_ID)


async def run_inn(store: JsonFileStore, minutes: float, workers: int, seed: int) -> None:
    clock = SimClock(1_700_000_000.0)
    rng = random.Random(seed)
    players = [f"player{i + 1}" for i in range(workers)]
    stats = {pid: {"speed": rng.randint(0, 60), "sight": rng.randint(0, 60),
                   "luck": rng.randint(0, 120)} for pid in players}

    await create_session(store, INN_ID, gamemode=MODE_INNKEEPER, power=2, now=clock.t)
    ctl = InnCycleController(
        store, EventGenerator.from_tables(rng=random.Random(seed)),
        StaticPresence({INN_ID: players}), StaticStats(stats), Ledger(store),
        clock=clock, rng=random.Random(seed + 1),
    )
    driver = CycleDriver(ctl)
    await driver.poll_store(clock.t)
    driver.post(INN_ID, clock.t)

    end = clock.t + minutes * 60
    while clock.t < end:
        results = await driver.tick(clock.t)
        for sid, outcome in results.items():
            if outcome is not None and outcome.value != "working":
                print(f"[MAIN] {sid}: {outcome.value}")
        clock.t = min(driver.peek_time(), end)

    status = await ctl.get_inn_status(INN_ID)
    print(f"[MAIN] inn: {status['message']} (state_version {status['state_version']})")
    for pid in players:
        print(f"[MAIN] {pid}: {await ctl.ledger.balance(pid)} coins")
    print(f"[MAIN] cycles run: {driver.cycles_run} {driver.outcomes}")
    for line in driver.debug_dump():
        print(f"[MAIN] pending {line}")


def main():
    parser = argparse.ArgumentParser(description="Mine rails and inn cycle runner")
    parser.add_argument("--store", default="saves/sessions",
                        help="directory for session JSON files")
    parser.add_argument("--minutes", type=float, default=40.0,
                        help="simulated inn time to run")
    parser.add_argument("--workers", type=int, default=3)
    parser.add_argument("--seed", type=int, default=1)
    parser.add_argument("--target", default="7,6", help="where the miner stands, as x,y")
    parser.add_argument("--iron", type=int, default=None,
                        help="iron available for rails (default unlimited)")
    args = parser.parse_args()

    tx, ty = (int(v) for v in args.target.split(","))
    store = JsonFileStore(args.store)

    async def run():
        await run_mine(store, Position(tx, ty), args.iron)
        await run_inn(store, args.minutes, args.workers, args.seed)

    asyncio.run(run())


if __name__ == "__main__":
    main()
