"""test_inn_cycle.py — Inn work/break state machine, locks and the driver.

Everything runs against MemoryStore with a hand-cranked clock, so no
test ever sleeps for real (except the tiny store latency used to force
interleaving in the concurrency tests).

Run: python test_inn_cycle.py   (or pytest)
"""
from __future__ import annotations
import asyncio
import random
import sys
import traceback

from core.constants import MODE_INNKEEPER, STATE_BREAK, STATE_TRANSITIONING, STATE_WORKING
from core.errors import InnClosed, StoreError
from core.session import create_session
from core.store import MemoryStore, Update, get_path
from inn.collaborators import Ledger, StaticPresence, StaticStats
from inn.controller import CycleOutcome, InnCycleController
from inn.events import EventGenerator
from inn.models import CoinFindEvent, PlayerStats, RumorEvent
from inn.scheduler import CycleDriver

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


SID = "inn-1"
T0 = 1_000_000.0


class Clock:
    def __init__(self, t: float = T0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> float:
        self.t += seconds
        return self.t


class BreakCommitFails(MemoryStore):
    """Raises once on the write that would complete a break start."""

    def __init__(self):
        super().__init__()
        self.armed = True

    async def find_one_and_update(self, session_id, where, update, **kwargs):
        if self.armed and update.set.get("game_data.work_state") == STATE_BREAK:
            self.armed = False
            raise StoreError("disk full")
        return await super().find_one_and_update(session_id, where, update, **kwargs)


class FlakyReads(MemoryStore):
    """``find_one`` raises while ``failures`` is positive."""

    def __init__(self, failures: int = 0):
        super().__init__()
        self.failures = failures

    async def find_one(self, session_id):
        if self.failures > 0:
            self.failures -= 1
            raise StoreError("connection reset")
        return await super().find_one(session_id)


class BrokenPresence:
    async def present(self, session_id):
        raise RuntimeError("presence service down")


async def make_inn(store=None, workers=("p1", "p2"), stats=None, clock=None,
                   presence=None, seed=7, sid=SID):
    store = store if store is not None else MemoryStore()
    clock = clock or Clock()
    await create_session(store, sid, gamemode=MODE_INNKEEPER, power=1, now=clock.t)
    ctl = InnCycleController(
        store,
        EventGenerator.from_tables(rng=random.Random(seed)),
        presence or StaticPresence({sid: list(workers)}),
        StaticStats(stats or {"p1": {"speed": 10, "sight": 10, "luck": 10},
                              "p2": {"speed": 2, "sight": 3, "luck": 1}}),
        Ledger(store),
        clock=clock,
        rng=random.Random(seed),
    )
    return ctl, clock


async def game_data(ctl, sid=SID) -> dict:
    return (await ctl.store.find_one(sid))["game_data"]


async def run_until(ctl, clock, outcome, step=10.0, limit=400):
    for _ in range(limit):
        clock.advance(step)
        got = await ctl.run_cycle(SID)
        if got is outcome:
            return got
    raise AssertionError(f"never reached {outcome}")


# ════════════════════════════════════════════════════════════════════════
#  Cycle
# ════════════════════════════════════════════════════════════════════════

def test_first_cycle_initializes():
    async def run():
        ctl, clock = await make_inn()
        outcome = await ctl.run_cycle(SID)
        doc = await ctl.store.find_one(SID)
        return outcome, doc, clock.t
    outcome, doc, now = asyncio.run(run())
    gd = doc["game_data"]
    assert outcome is CycleOutcome.WORKING
    assert gd["work_state"] == STATE_WORKING
    assert gd["work_start_time"] == now and gd["work_period_id"]
    assert gd["state_version"] == 1 and gd["profits_distributed"] is False
    assert len(gd["current_rotational_items"]) == 3
    assert now + 5 <= doc["next_trigger"] <= now + 15
    assert "lock_id" not in gd and "lock_expiry" not in gd
    ok("First cycle → working, shop rotated, next poll in 5-15s, lock released")


def test_missing_and_wrong_mode():
    async def run():
        ctl, _ = await make_inn()
        await create_session(ctl.store, "mine-1", now=T0)
        return await ctl.run_cycle("ghost"), await ctl.run_cycle("mine-1")
    ghost, mine = asyncio.run(run())
    assert ghost is CycleOutcome.MISSING and mine is CycleOutcome.MISSING
    ok("Unknown or non-innkeeper session → MISSING")


def test_full_work_break_cycle():
    async def run():
        ctl, clock = await make_inn()
        await ctl.run_cycle(SID)
        await run_until(ctl, clock, CycleOutcome.BREAK_STARTED)
        on_break = await game_data(ctl)
        doc = await ctl.store.find_one(SID)
        balances = {p: await ctl.ledger.balance(p) for p in ("p1", "p2")}
        break_at = clock.t
        await run_until(ctl, clock, CycleOutcome.BREAK_ENDED)
        back = await game_data(ctl)
        return on_break, doc, balances, break_at, back, clock.t
    on_break, doc, balances, break_at, back, ended_at = asyncio.run(run())
    assert on_break["work_state"] == STATE_BREAK
    assert on_break["sales"] == [] and on_break["events"] == []
    assert on_break["break_end_time"] == break_at + 300
    assert doc["next_trigger"] == break_at + 30
    assert on_break["profits_distributed"] is True
    report = on_break["last_profit_report"]
    assert set(report["payouts"]) == {"p1", "p2"}
    for pid, paid in report["payouts"].items():
        assert paid > 0
        assert balances[pid] >= paid
    assert ended_at >= break_at + 300
    assert back["work_state"] == STATE_WORKING
    assert back["profits_distributed"] is False
    assert back["work_period_id"] and back["work_start_time"] == ended_at
    assert back["state_version"] == on_break["state_version"] + 1
    ok("25 min work → paid break of 5 min → fresh work period")


def test_concurrent_break_start_pays_once():
    async def run():
        ctl, clock = await make_inn()
        await ctl.run_cycle(SID)
        await ctl.record_player_sale(SID, "p1", "ale", "buy-1", quantity=2)
        ctl.store.latency = 0.001
        results = await asyncio.gather(
            *(ctl.start_break(SID, clock.t) for _ in range(8)))
        wallets = [await ctl.store.find_one(f"wallet-{p}") for p in ("p1", "p2")]
        return results, wallets, await game_data(ctl)
    results, wallets, gd = asyncio.run(run())
    assert results.count(True) == 1
    assert gd["work_state"] == STATE_BREAK
    assert gd["state_version"] == 3
    for wallet in wallets:
        assert len(wallet["refs"]) == 1
        assert wallet["money"] == list(wallet["refs"].values())[0]
    ok("8 concurrent break starts → one winner, one payout per worker")


def test_break_start_rolls_back_and_retries_without_double_pay():
    async def run():
        ctl, clock = await make_inn(store=BreakCommitFails())
        await ctl.run_cycle(SID)
        first = await ctl.start_break(SID, clock.t)
        after_fail = await game_data(ctl)
        paid = await ctl.ledger.balance("p2")
        second = await ctl.start_break(SID, clock.advance(5))
        after_retry = await game_data(ctl)
        wallet = await ctl.store.find_one("wallet-p2")
        return first, after_fail, paid, second, after_retry, wallet
    first, after_fail, paid, second, after_retry, wallet = asyncio.run(run())
    assert first is False
    assert after_fail["work_state"] == STATE_WORKING
    assert after_fail["profits_distributed"] is False
    assert paid > 0
    assert second is True and after_retry["work_state"] == STATE_BREAK
    assert wallet["money"] == paid and len(wallet["refs"]) == 1
    ok("Failed completion rolls back to working; retry doesn't pay twice")


def test_distribution_failure_still_starts_break():
    async def run():
        ctl, clock = await make_inn(presence=BrokenPresence())
        await ctl.initialize_if_needed(SID, await ctl.store.find_one(SID), clock.t)
        started = await ctl.start_break(SID, clock.t)
        return started, await game_data(ctl), ctl.log.for_cat("econ")
    started, gd, econ = asyncio.run(run())
    assert started and gd["work_state"] == STATE_BREAK
    assert "last_profit_report" not in gd
    assert any(e["msg"] == "distribution failed" for e in econ)
    ok("Distribution error is logged, break starts anyway")


def test_nobody_present_pays_nothing():
    async def run():
        ctl, clock = await make_inn(workers=())
        await ctl.run_cycle(SID)
        started = await ctl.start_break(SID, clock.t)
        return started, await ctl.ledger.balance("p1")
    started, balance = asyncio.run(run())
    assert started and balance == 0
    ok("Empty inn → break starts, no payouts")


# ════════════════════════════════════════════════════════════════════════
#  Idempotent events
# ════════════════════════════════════════════════════════════════════════

def test_duplicate_event_applied_once():
    async def run():
        ctl, clock = await make_inn()
        await ctl.run_cycle(SID)
        rumor = RumorEvent("rumor-1", clock.t, "Grimjaw", "Tethys", "the vault is empty")
        first = await ctl.apply_event(SID, rumor)
        again = await ctl.apply_event(SID, rumor)
        ctl.store.latency = 0.001
        burst = await asyncio.gather(*(ctl.apply_event(
            SID, RumorEvent("rumor-2", clock.t, "A", "B", "x")) for _ in range(5)))
        return first, again, burst, await game_data(ctl)
    first, again, burst, gd = asyncio.run(run())
    assert first and not again
    assert burst.count(True) == 1
    assert [e["event_id"] for e in gd["events"]] == ["rumor-1", "rumor-2"]
    assert gd["event_sequence"] == 2
    ok("Same event id applied at most once, even concurrently")


def test_player_sale_deduped_by_purchase_id():
    async def run():
        ctl, _ = await make_inn()
        await ctl.run_cycle(SID)
        sale = await ctl.record_player_sale(SID, "p1", "stew", "purchase-9")
        dup = await ctl.record_player_sale(SID, "p1", "stew", "purchase-9")
        return sale, dup, await game_data(ctl)
    sale, dup, gd = asyncio.run(run())
    assert sale is not None and dup is None
    assert sale.price == 20 and sale.profit == 19 and not sale.is_npc
    assert len(gd["sales"]) == 1 and gd["sales"][0]["buyer"] == "p1"
    ok("Player purchase recorded once per purchase id")


def test_player_sale_refused_while_closed():
    async def run():
        ctl, clock = await make_inn()
        await ctl.run_cycle(SID)
        await ctl.start_break(SID, clock.t)
        try:
            await ctl.record_player_sale(SID, "p1", "stew", "purchase-late")
        except InnClosed as exc:
            refused = exc
        else:
            refused = None
        ghost = await ctl.record_player_sale("no-such-inn", "p1", "stew", "p-x")
        return refused, ghost, await game_data(ctl)
    refused, ghost, gd = asyncio.run(run())
    assert refused is not None and refused.work_state == STATE_BREAK
    assert ghost is None
    assert gd["sales"] == []
    ok("Purchase during a break raises InnClosed; unknown inn → None")


def test_coin_find_credits_finder_once():
    async def run():
        ctl, clock = await make_inn()
        await ctl.run_cycle(SID)
        coins = CoinFindEvent("coin-1", clock.t, finder="p2", amount=7)
        a = await ctl.apply_event(SID, coins)
        b = await ctl.apply_event(SID, coins)
        return a, b, await ctl.ledger.balance("p2")
    a, b, balance = asyncio.run(run())
    assert a and not b and balance == 7
    ok("Coin find pays the finder exactly once")


def test_events_rejected_outside_working():
    async def run():
        ctl, clock = await make_inn()
        await ctl.run_cycle(SID)
        await ctl.start_break(SID, clock.t)
        return await ctl.apply_event(SID, RumorEvent("late", clock.t, "A", "B", "x"))
    assert asyncio.run(run()) is False
    ok("Events arriving during a break are dropped")


# ════════════════════════════════════════════════════════════════════════
#  Locks, recovery, status
# ════════════════════════════════════════════════════════════════════════

def test_lock_contention_and_expiry():
    async def run():
        ctl, clock = await make_inn()
        await ctl.run_cycle(SID)
        held = await ctl.acquire_lock(SID, clock.t)
        second = await ctl.acquire_lock(SID, clock.t)
        skipped = await ctl.run_cycle(SID)
        wrong = await ctl.release_lock(SID, "not-mine")
        clock.advance(31)
        reclaimed = await ctl.run_cycle(SID)
        return held, second, skipped, wrong, reclaimed
    held, second, skipped, wrong, reclaimed = asyncio.run(run())
    assert held and second is None
    assert skipped is CycleOutcome.SKIPPED
    assert wrong is False
    assert reclaimed is CycleOutcome.WORKING
    ok("Held lock → SKIPPED; expired lock is reclaimable")


def test_same_seed_workers_get_distinct_locks():
    async def run():
        ctl, clock = await make_inn()
        twin = InnCycleController(
            ctl.store, ctl.events, ctl.presence, ctl.stats, ctl.ledger,
            clock=clock, rng=random.Random(7))
        mine = await ctl.acquire_lock(SID, clock.t)
        clock.advance(31)
        theirs = await twin.acquire_lock(SID, clock.t)
        stale_release = await ctl.release_lock(SID, mine)
        holder = get_path(await ctl.store.find_one(SID), "game_data.lock_id")
        return mine, theirs, stale_release, holder
    mine, theirs, stale_release, holder = asyncio.run(run())
    assert mine and theirs and mine != theirs
    assert stale_release is False
    assert holder == theirs
    ok("Expired holder can't release the lock its successor took")


def test_concurrent_cycles_one_runs():
    async def run():
        ctl, _ = await make_inn()
        await ctl.run_cycle(SID)
        ctl.store.latency = 0.001
        return await asyncio.gather(*(ctl.run_cycle(SID) for _ in range(4)))
    outcomes = asyncio.run(run())
    assert outcomes.count(CycleOutcome.SKIPPED) == 3
    ok("Four simultaneous cycles → three skip")


def test_stuck_transition_recovered():
    async def run():
        ctl, clock = await make_inn()
        await ctl.run_cycle(SID)
        await ctl.record_player_sale(SID, "p1", "ale", "buy-1")
        # Crash between claim and completion
        await ctl.store.find_one_and_update(SID, None, Update(set={
            "game_data.work_state": STATE_TRANSITIONING,
            "game_data.profits_distributed": True,
        }))
        clock.advance(700)
        outcome = await ctl.run_cycle(SID)
        return outcome, await ctl.store.find_one(SID), clock.t
    outcome, doc, now = asyncio.run(run())
    gd = doc["game_data"]
    assert outcome is CycleOutcome.RECOVERED
    assert gd["work_state"] == STATE_WORKING and gd["profits_distributed"] is False
    assert gd["sales"] == []
    assert doc["next_trigger"] == now + 5
    assert "lock_id" not in gd
    ok("Overdue transitioning session reset to working, paid sales dropped")


def test_stuck_working_keeps_unpaid_sales():
    async def run():
        ctl, clock = await make_inn()
        await ctl.run_cycle(SID)
        await ctl.record_player_sale(SID, "p1", "ale", "buy-1")
        clock.advance(700)
        return await ctl.run_cycle(SID), await game_data(ctl)
    outcome, gd = asyncio.run(run())
    assert outcome is CycleOutcome.RECOVERED
    assert len(gd["sales"]) == 1
    ok("Recovery keeps sales that were never paid out")


def test_transitioning_leaves_trigger_alone():
    async def run():
        ctl, clock = await make_inn()
        await ctl.run_cycle(SID)
        await ctl.store.find_one_and_update(SID, None, Update(set={
            "game_data.work_state": STATE_TRANSITIONING}))
        before = (await ctl.store.find_one(SID))["next_trigger"]
        clock.advance(5)
        outcome = await ctl.run_cycle(SID)
        after = (await ctl.store.find_one(SID))["next_trigger"]
        return outcome, before, after
    outcome, before, after = asyncio.run(run())
    assert outcome is CycleOutcome.TRANSITIONING and before == after
    ok("Mid-transition session is not rescheduled")


def test_recover_inn_command():
    async def run():
        ctl, _ = await make_inn()
        await ctl.run_cycle(SID)
        await ctl.store.find_one_and_update(SID, None, Update(set={
            "game_data.work_state": STATE_BREAK, "game_data.lock_id": "stale",
            "game_data.lock_expiry": T0 + 10_000}))
        done = await ctl.recover_inn(SID)
        return done, await game_data(ctl), await ctl.recover_inn("ghost")
    done, gd, ghost = asyncio.run(run())
    assert done and not ghost
    assert gd["work_state"] == STATE_WORKING and "lock_expiry" not in gd
    ok("Operator recovery clears the lock and resets to working")


def test_status_reports():
    async def run():
        ctl, clock = await make_inn()
        out = [(await ctl.get_inn_status(SID))["status"]]
        await ctl.run_cycle(SID)
        out.append((await ctl.get_inn_status(SID))["status"])
        lock = await ctl.acquire_lock(SID, clock.t)
        out.append((await ctl.get_inn_status(SID))["status"])
        await ctl.release_lock(SID, lock)
        await ctl.start_break(SID, clock.t)
        status = await ctl.get_inn_status(SID)
        out.append(status["status"])
        remaining = status["time_remaining"]
        await ctl.store.find_one_and_update(SID, None, Update(set={
            "game_data.work_state": STATE_TRANSITIONING}))
        out.append((await ctl.get_inn_status(SID))["status"])
        clock.advance(1000)
        out.append((await ctl.get_inn_status(SID))["status"])
        return out, remaining
    statuses, remaining = asyncio.run(run())
    assert statuses == ["uninitialized", "working", "locked",
                        "on_break", "transitioning", "stuck"]
    assert remaining == 300
    ok("Status: uninitialized / working / locked / on_break / transitioning / stuck")


def test_next_delay_bands():
    ctl = InnCycleController(MemoryStore(), EventGenerator([], []), StaticPresence(),
                             StaticStats(), Ledger(MemoryStore()), rng=random.Random(1))
    now = T0
    working = {"work_state": STATE_WORKING, "last_activity": now}
    assert ctl.next_delay({**working, "work_start_time": now - 1450}, now) == 5
    assert ctl.next_delay({**working, "work_start_time": now - 1400}, now) == 10
    assert ctl.next_delay({**working, "work_start_time": now - 1300}, now) == 20
    assert 5 <= ctl.next_delay({**working, "work_start_time": now}, now) <= 15
    quiet = {**working, "work_start_time": now, "last_activity": now - 15}
    assert ctl.next_delay(quiet, now) == 5
    on_break = {"work_state": STATE_BREAK}
    assert ctl.next_delay({**on_break, "break_end_time": now + 5}, now) == 2
    assert ctl.next_delay({**on_break, "break_end_time": now + 25}, now) == 5
    assert ctl.next_delay({**on_break, "break_end_time": now + 200}, now) == 20
    ok("Polling tightens as the break approaches and ends")


# ════════════════════════════════════════════════════════════════════════
#  Driver
# ════════════════════════════════════════════════════════════════════════

def test_driver_retries_with_backoff():
    async def run():
        store = FlakyReads()
        ctl, clock = await make_inn(store=store)
        driver = CycleDriver(ctl)
        driver.post(SID, clock.t)
        store.failures = 2
        delays = []
        for _ in range(2):
            start = clock.t
            await driver.tick(clock.t)
            delays.append(driver.peek_time() - start)
            clock.t = driver.peek_time()
        retries = get_path(await store.find_one(SID), "game_data.retry_count")
        result = await driver.tick(clock.t)
        after = get_path(await store.find_one(SID), "game_data.retry_count")
        return delays, retries, result, after, driver
    delays, retries, result, after, driver = asyncio.run(run())
    assert delays == [30, 60]
    assert retries == 2
    assert result == {SID: CycleOutcome.WORKING}
    assert after == 0
    assert driver.failures == 2 and driver.cycles_run == 1
    ok("Store failures back off 30s, 60s; success resets the count")


def test_driver_survives_collaborator_crash():
    async def run():
        ctl, clock = await make_inn(presence=BrokenPresence())
        await create_session(ctl.store, "inn-2", gamemode=MODE_INNKEEPER, now=T0)
        driver = CycleDriver(ctl)
        for sid in (SID, "inn-2"):
            await ctl.initialize_if_needed(sid, await ctl.store.find_one(sid), clock.t)
            driver.post(sid, clock.t)
        # Past the activity guarantee, so the cycle asks who is present
        clock.advance(30)
        results = await driver.tick(clock.t)
        docs = [await ctl.store.find_one(sid) for sid in (SID, "inn-2")]
        return results, driver, docs, clock.t
    results, driver, docs, now = asyncio.run(run())
    assert results == {SID: None, "inn-2": None}
    assert driver.pending_count() == 2
    assert driver.failures == 2 and driver.cycles_run == 0
    assert driver.peek_time() == now + 30
    for doc in docs:
        assert doc["game_data"]["retry_count"] == 1
        assert doc["next_trigger"] == now + 30
        assert "lock_id" not in doc["game_data"]
    ok("Presence crash → both inns backed off and still queued, locks freed")


def test_retry_backoff_is_capped():
    async def run():
        ctl, clock = await make_inn()
        return [await ctl.schedule_retry(SID, clock.t) for _ in range(6)]
    assert asyncio.run(run()) == [30, 60, 120, 240, 300, 300]
    ok("Backoff doubles up to 300s")


def test_driver_polls_store_for_due_inns():
    async def run():
        clock = Clock()
        ctl, _ = await make_inn(clock=clock)
        await create_session(ctl.store, "inn-2", gamemode=MODE_INNKEEPER, now=T0)
        await create_session(ctl.store, "inn-later", gamemode=MODE_INNKEEPER, now=T0 + 500)
        await create_session(ctl.store, "mine-1", now=T0)
        await ctl.ledger.credit("p1", 5, ref="seed")
        driver = CycleDriver(ctl)
        found = await driver.poll_store(clock.t)
        pending = driver.pending_count()
        results = await driver.tick(clock.t)
        return found, pending, results, driver
    found, pending, results, driver = asyncio.run(run())
    assert found == 2 and pending == 2
    assert set(results) == {SID, "inn-2"}
    assert all(r is CycleOutcome.WORKING for r in results.values())
    assert driver.pending_count() == 2
    ok("poll_store picks due innkeeper sessions only; both run in one tick")


def test_driver_reposts_transitioning_soon():
    async def run():
        ctl, clock = await make_inn()
        await ctl.run_cycle(SID)
        await ctl.store.find_one_and_update(SID, None, Update(set={
            "game_data.work_state": STATE_TRANSITIONING, "next_trigger": clock.t}))
        driver = CycleDriver(ctl)
        driver.post(SID, clock.t)
        driver.post(SID, clock.t)
        await driver.tick(clock.t)
        return driver.peek_time() - clock.t, driver
    delay, driver = asyncio.run(run())
    assert delay == 5
    assert driver.cycles_run == 1
    assert driver.outcomes == {"transitioning": 1}
    ok("Re-posting replaces the old entry; stalled transition polled in 5s")


def test_stats_provider_defaults():
    async def run():
        return await StaticStats({"p1": PlayerStats(speed=3)}).get_player_stats("nobody")
    assert asyncio.run(run()) == PlayerStats()
    ok("Unknown players have zero stats")


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
