"""test_store.py — Session document store: conditional updates and files.

Run: python test_store.py   (or pytest)
"""
from __future__ import annotations
import asyncio
import json
import sys
import tempfile
import traceback
from pathlib import Path

from filelock import FileLock

from core.cache import SessionCache
from core.dev_log import DevLog
from core.errors import InvalidGrid, StoreError
from core.grid import Grid, Position
from core.store import (
    JsonFileStore, MemoryStore, Update, field_equals, get_path, no_entry_with,
)

passed = 0
failed = 0


def ok(label: str):
    global passed
    passed += 1
    print(f"  [PASS] {label}")


def fail(label: str, detail: str = ""):
    global failed
    failed += 1
    print(f"  [FAIL] {label}")
    if detail:
        for line in detail.strip().splitlines():
            print(f"         {line}")


# ════════════════════════════════════════════════════════════════════════
#  Conditional updates
# ════════════════════════════════════════════════════════════════════════

def test_update_operations():
    async def run():
        store = MemoryStore()
        assert await store.insert("s1", {"game_data": {"n": 1, "tags": []}})
        assert not await store.insert("s1", {})

        doc = await store.find_one_and_update("s1", None, Update(
            set={"game_data.mode": "inn"},
            set_default={"game_data.n": 99, "game_data.fresh": True},
            inc={"game_data.n": 2},
            push={"game_data.tags": "a"},
        ))
        gd = doc["game_data"]
        assert gd == {"n": 3, "tags": ["a"], "mode": "inn", "fresh": True}, gd

        doc = await store.find_one_and_update(
            "s1", None, Update(unset=["game_data.fresh", "game_data.nope"]))
        assert "fresh" not in doc["game_data"]
    asyncio.run(run())
    ok("set / set_default / inc / push / unset")


def test_predicate_gates_write():
    async def run():
        store = MemoryStore()
        await store.insert("s1", {"game_data": {"state": "working"}})
        miss = await store.find_one_and_update(
            "s1", field_equals("game_data.state", "break"),
            Update(set={"game_data.x": 1}))
        assert miss is None
        assert get_path(await store.find_one("s1"), "game_data.x") is None
        before = await store.find_one_and_update(
            "s1", field_equals("game_data.state", "working"),
            Update(set={"game_data.state": "break"}), return_before=True)
        assert before["game_data"]["state"] == "working"
        assert (await store.find_one("s1"))["game_data"]["state"] == "break"
        assert await store.find_one_and_update("nope", None, Update()) is None
    asyncio.run(run())
    ok("Failed predicate writes nothing; return_before gives pre-image")


def test_concurrent_claims_have_one_winner():
    async def run():
        store = MemoryStore(latency=0.001)
        await store.insert("s1", {"game_data": {"claimed": False}})

        async def claim(i):
            return await store.find_one_and_update(
                "s1", field_equals("game_data.claimed", False),
                Update(set={"game_data.claimed": True, "game_data.by": i}))
        results = await asyncio.gather(*(claim(i) for i in range(10)))
        return [r for r in results if r is not None]
    winners = asyncio.run(run())
    assert len(winners) == 1
    ok("10 concurrent claims → exactly one succeeds")


def test_no_entry_with_dedupes():
    async def run():
        store = MemoryStore()
        await store.insert("s1", {"game_data": {"events": []}})
        pred = no_entry_with("game_data.events", "event_id", "e1")
        upd = Update(push={"game_data.events": {"event_id": "e1"}})
        first = await store.find_one_and_update("s1", pred, upd)
        second = await store.find_one_and_update("s1", pred, upd)
        return first, second, await store.find_one("s1")
    first, second, doc = asyncio.run(run())
    assert first is not None and second is None
    assert len(doc["game_data"]["events"]) == 1
    ok("Push guarded by no_entry_with lands once")


def test_returned_docs_are_copies():
    async def run():
        store = MemoryStore()
        await store.insert("s1", {"game_data": {"sales": []}})
        doc = await store.find_one("s1")
        doc["game_data"]["sales"].append("leak")
        return await store.find_one("s1")
    doc = asyncio.run(run())
    assert doc["game_data"]["sales"] == []
    ok("Mutating a returned document doesn't touch the store")


# ════════════════════════════════════════════════════════════════════════
#  JSON file backend
# ════════════════════════════════════════════════════════════════════════

def test_json_store_persists():
    with tempfile.TemporaryDirectory() as tmp:
        async def write():
            store = JsonFileStore(tmp)
            await store.insert("chan-1", {"game_data": {"n": 1}})
            await store.find_one_and_update("chan-1", None,
                                            Update(inc={"game_data.n": 4}))

        async def read():
            store = JsonFileStore(tmp)
            return await store.find_one("chan-1"), await store.find_ids()

        asyncio.run(write())
        doc, ids = asyncio.run(read())
        assert doc["game_data"]["n"] == 5
        assert ids == ["chan-1"]
        raw = json.loads((Path(tmp) / "chan-1.json").read_text())
        assert raw["session_id"] == "chan-1"
        assert not list(Path(tmp).glob("*.tmp"))
    ok("JSON store survives a restart; no temp files left behind")


def test_json_stores_sharing_a_directory_see_each_other():
    claim = Update(set={"game_data.lock_id": "x"})
    free = lambda d: get_path(d, "game_data.lock_id") is None

    with tempfile.TemporaryDirectory() as tmp:
        async def run():
            one, two = JsonFileStore(tmp), JsonFileStore(tmp)
            await one.insert("inn-1", {"game_data": {}})
            await two.find_one("inn-1")
            first = await one.find_one_and_update(
                "inn-1", free, Update(set={"game_data.lock_id": "one"}))
            second = await two.find_one_and_update(
                "inn-1", free, Update(set={"game_data.lock_id": "two"}))
            seen = await two.find_one("inn-1")
            await two.delete("inn-1")
            gone = await one.find_one("inn-1")
            return first, second, seen, gone

        first, second, seen, gone = asyncio.run(run())
        assert first is not None and second is None
        assert seen["game_data"]["lock_id"] == "one"
        assert gone is None

        async def blocked():
            store = JsonFileStore(tmp, lock_timeout=0.05)
            await store.insert("inn-2", {"game_data": {}})
            with FileLock(str(Path(tmp) / "inn-2.json.lock")):
                try:
                    await store.find_one_and_update("inn-2", free, claim)
                except StoreError:
                    return True
            return False

        assert asyncio.run(blocked())
    ok("Two file stores on one directory: one CAS winner, no stale reads")


# ════════════════════════════════════════════════════════════════════════
#  Grid, cache, dev log
# ════════════════════════════════════════════════════════════════════════

def test_grid_dict_round_trip_and_validation():
    grid = Grid.from_rows(["#E#", "...", "o$^"])
    grid.player_positions["p1"] = Position(1, 1)
    again = Grid.from_dict(grid.to_dict())
    assert again.to_rows() == grid.to_rows()
    assert again.entrance == Position(1, 0)
    assert again.player_positions == {"p1": Position(1, 1)}

    bad = grid.to_dict()
    bad["tiles"][1].pop()
    try:
        Grid.from_dict(bad)
    except InvalidGrid:
        pass
    else:
        raise AssertionError("ragged grid accepted")

    try:
        Grid.from_rows(["#?#"])
    except InvalidGrid:
        pass
    else:
        raise AssertionError("unknown glyph accepted")
    ok("Grid serializes, rejects ragged rows and unknown glyphs")


def test_session_cache_invalidate():
    t = [0.0]
    cache = SessionCache(ttl=10, clock=lambda: t[0])
    cache.put("a", "view-a")
    cache.put("a", "other", key="x")
    cache.put("b", "view-b")
    assert cache.get("a") == "view-a"
    cache.invalidate("a")
    assert cache.get("a") is None and cache.get("a", "x") is None
    assert cache.get("b") == "view-b"
    t[0] = 11
    assert cache.get("b") is None
    ok("Cache invalidates per session and expires by TTL")


def test_dev_log_keeps_each_session_bounded():
    log = DevLog(max_per_session=2)
    for i in range(5):
        log.record("s1" if i % 2 else "s2", "inn", f"m{i}", t=float(i))
    log.record("s1", "econ", "paid", t=5.0)
    assert [e["msg"] for e in log.for_session("s2")] == ["m2", "m4"]
    assert [e["msg"] for e in log.for_session("s1")] == ["m3", "paid"]
    assert [e["msg"] for e in log.recent()] == ["m2", "m3", "m4", "paid"]
    assert [e["msg"] for e in log.for_cat("econ")] == ["paid"]
    log.muted = True
    assert log.record("s1", "inn", "ignored") is None
    log.forget("s2")
    assert len(log) == 2 and log.for_session("s2") == []
    ok("DevLog keeps the newest entries per session")


if __name__ == "__main__":
    for name, fn in list(globals().items()):
        if name.startswith("test_") and callable(fn):
            print(f"\n=== {name} ===")
            try:
                fn()
            except Exception:
                fail(name, traceback.format_exc())
    print(f"\n{'=' * 50}")
    print(f"  {passed} passed, {failed} failed")
    print(f"{'=' * 50}")
    sys.exit(1 if failed else 0)
