"""inn/controller.py — Inn work/break cycle state machine.

    working ──(work period over)──▶ transitioning_to_break ──▶ break
       ▲                                                         │
       └──────────────────(break over)───────────────────────────┘

Every transition is one conditional store write whose predicate is the
current ``work_state``.  That predicate is what keeps two workers from
both ending the same work period; ``state_version`` only counts
committed transitions for the status page and logs.

A cycle (:meth:`InnCycleController.run_cycle`) runs under a session
lock with an expiry, so a worker that dies mid-cycle blocks the session
for at most ``lock_timeout`` seconds.  A session whose ``next_trigger``
is more than ``overdue_threshold`` in the past is considered stuck and
reset to a fresh work period.

Store failures propagate out of ``run_cycle`` (after the lock is
released); the driver owns retry and backoff.
"""

from __future__ import annotations
import math
import random
import time
import uuid
from enum import Enum

from core.constants import (
    ACTIVITY_GUARANTEE, BREAK_DURATION, LOCK_TIMEOUT, MESSAGE_COOLDOWN, MODE_INNKEEPER,
    OVERDUE_THRESHOLD, RETRY_BASE_DELAY, RETRY_MAX_DELAY, SHOP_REFRESH_INTERVAL,
    STATE_BREAK, STATE_TRANSITIONING, STATE_WORKING, WORK_DURATION,
)
from core.dev_log import DevLog
from core.errors import InnClosed, StoreError
from core.store import SessionStore, Update, all_of, field_equals, get_path, no_entry_with
from core.tuning import get as _tun
from inn.collaborators import Ledger, PresenceProvider, StatsProvider
from inn.economy import ProfitReport, compute_distribution, player_tip
from inn.events import EventContext, EventGenerator
from inn.models import AnyEvent, PlayerStats, SaleEvent, event_to_dict

GD = "game_data"

_LOCK_FIELDS = (f"{GD}.lock_id", f"{GD}.lock_expiry", f"{GD}.lock_acquired_at")


class CycleOutcome(str, Enum):
    MISSING = "missing"
    SKIPPED = "skipped"
    RECOVERED = "recovered"
    BREAK_STARTED = "break_started"
    BREAK_ENDED = "break_ended"
    ON_BREAK = "on_break"
    TRANSITIONING = "transitioning"
    WORKING = "working"


def _t(key: str, default: float) -> float:
    return float(_tun("inn.timing", key, default))


class InnCycleController:
    """Drives one store's innkeeper sessions through work and break."""

    def __init__(self, store: SessionStore, events: EventGenerator,
                 presence: PresenceProvider, stats: StatsProvider,
                 ledger: Ledger, log: DevLog | None = None,
                 clock=time.time, rng: random.Random | None = None) -> None:
        self.store = store
        self.events = events
        self.presence = presence
        self.stats = stats
        self.ledger = ledger
        self.log = log if log is not None else DevLog()
        self.clock = clock
        self.rng = rng or random.Random()

    def _note(self, sid: str, msg: str, now: float, **details) -> None:
        print(f"[INN] {sid}: {msg}")
        self.log.record(sid, "inn", msg, t=now, details=details or None)

    def _period_id(self, sid: str, now: float) -> str:
        return f"work-{sid}-{int(now * 1000)}"

    # ── Locking ──────────────────────────────────────────────────────

    async def acquire_lock(self, sid: str, now: float) -> str | None:
        """Claim the session lock.  ``None`` if someone else holds it."""
        lock_id = uuid.uuid4().hex
        timeout = _t("lock_timeout", LOCK_TIMEOUT)

        def free(doc: dict) -> bool:
            expiry = get_path(doc, f"{GD}.lock_expiry")
            return expiry is None or expiry < now

        res = await self.store.find_one_and_update(sid, free, Update(set={
            f"{GD}.lock_id": lock_id,
            f"{GD}.lock_expiry": now + timeout,
            f"{GD}.lock_acquired_at": now,
        }))
        return lock_id if res is not None else None

    async def release_lock(self, sid: str, lock_id: str) -> bool:
        res = await self.store.find_one_and_update(
            sid, field_equals(f"{GD}.lock_id", lock_id),
            Update(unset=_LOCK_FIELDS))
        return res is not None

    # ── Initialization & recovery ────────────────────────────────────

    async def initialize_if_needed(self, sid: str, doc: dict, now: float) -> dict:
        if get_path(doc, f"{GD}.work_state"):
            return doc
        res = await self.store.find_one_and_update(
            sid, lambda d: not get_path(d, f"{GD}.work_state"),
            Update(set={
                f"{GD}.gamemode": MODE_INNKEEPER,
                f"{GD}.sales": [],
                f"{GD}.events": [],
                f"{GD}.work_state": STATE_WORKING,
                f"{GD}.work_start_time": now,
                f"{GD}.work_period_id": self._period_id(sid, now),
                f"{GD}.profits_distributed": False,
                f"{GD}.distribution_in_progress": False,
                f"{GD}.state_version": 1,
                f"{GD}.event_sequence": 0,
                f"{GD}.retry_count": 0,
                f"{GD}.last_activity": now,
                f"{GD}.next_shop_refresh": now,
                "next_trigger": now,
            }))
        if res is not None:
            self._note(sid, "initialized, first work period started", now)
            return res
        return await self.store.find_one(sid) or doc

    def is_stuck(self, doc: dict, now: float) -> bool:
        trigger = doc.get("next_trigger")
        overdue = _t("overdue_threshold", OVERDUE_THRESHOLD)
        return trigger is not None and now - trigger > overdue

    async def recover_stuck(self, sid: str, doc: dict, now: float) -> bool:
        """Reset an overdue session to a fresh work period.

        Sales already paid out (``profits_distributed``) are dropped so
        they can't be paid twice; unpaid ones carry into the new period.
        """
        paid = bool(get_path(doc, f"{GD}.profits_distributed"))
        fields = {
            f"{GD}.work_state": STATE_WORKING,
            f"{GD}.work_start_time": now,
            f"{GD}.work_period_id": self._period_id(sid, now),
            f"{GD}.profits_distributed": False,
            f"{GD}.distribution_in_progress": False,
            f"{GD}.retry_count": 0,
            f"{GD}.last_activity": now,
            "next_trigger": now + _t("recovery_delay", 5),
        }
        if paid:
            fields[f"{GD}.sales"] = []
            fields[f"{GD}.events"] = []
        res = await self.store.find_one_and_update(sid, None, Update(
            set=fields,
            unset=_LOCK_FIELDS + (f"{GD}.break_end_time",),
            inc={f"{GD}.state_version": 1},
        ))
        if res is not None:
            overdue = now - (doc.get("next_trigger") or now)
            self._note(sid, f"recovered from stuck "
                       f"{get_path(doc, f'{GD}.work_state')} state "
                       f"({overdue:.0f}s overdue)", now, dropped_sales=paid)
        return res is not None

    async def recover_inn(self, sid: str) -> bool:
        """Operator recovery: drop any lock and reset the cycle."""
        now = self.clock()
        doc = await self.store.find_one(sid)
        if not doc:
            return False
        return await self.recover_stuck(sid, doc, now)

    # ── Transitions ──────────────────────────────────────────────────

    async def start_break(self, sid: str, now: float) -> bool:
        """working → transitioning_to_break → break.

        The first write claims the period (and its profits); only one
        caller can win it.  Distribution failures are logged and the
        break still starts.  Payout references are derived from the
        work period id, so a period that is rolled back and claimed
        again never pays the same worker twice.
        """
        claim = all_of(
            field_equals(f"{GD}.work_state", STATE_WORKING),
            lambda d: get_path(d, f"{GD}.profits_distributed") is not True,
        )
        before = await self.store.find_one_and_update(sid, claim, Update(
            set={
                f"{GD}.work_state": STATE_TRANSITIONING,
                f"{GD}.profits_distributed": True,
                f"{GD}.distribution_in_progress": True,
            },
            inc={f"{GD}.state_version": 1},
        ), return_before=True)
        if before is None:
            return False

        period = get_path(before, f"{GD}.work_period_id") or self._period_id(sid, now)
        dist_id = f"dist-{period}"
        report = None
        try:
            report = await self.distribute_profits(sid, before, dist_id, now)
        except Exception as exc:
            print(f"[ECON] {sid}: profit distribution failed: {exc!r}")
            self.log.record(sid, "econ", "distribution failed", t=now,
                            details={"error": repr(exc)})

        fields = {
            f"{GD}.work_state": STATE_BREAK,
            f"{GD}.break_start_time": now,
            f"{GD}.break_end_time": now + _t("break_duration", BREAK_DURATION),
            f"{GD}.sales": [],
            f"{GD}.events": [],
            f"{GD}.work_period_id": None,
            f"{GD}.distribution_in_progress": False,
            f"{GD}.last_distribution_id": dist_id,
            f"{GD}.last_profit_distribution": now,
            "next_trigger": now + _t("break_started_delay", 30),
        }
        if report is not None:
            fields[f"{GD}.last_profit_report"] = summarize_report(report)
        try:
            done = await self.store.find_one_and_update(
                sid, field_equals(f"{GD}.work_state", STATE_TRANSITIONING),
                Update(set=fields, inc={f"{GD}.state_version": 1}))
        except StoreError as exc:
            print(f"[INN] {sid}: could not complete break start: {exc}")
            done = None
        if done is None:
            rolled = await self.store.find_one_and_update(
                sid, field_equals(f"{GD}.work_state", STATE_TRANSITIONING),
                Update(set={
                    f"{GD}.work_state": STATE_WORKING,
                    f"{GD}.profits_distributed": False,
                    f"{GD}.distribution_in_progress": False,
                }, inc={f"{GD}.state_version": 1}))
            self._note(sid, "break start rolled back" if rolled is not None
                       else "break start lost its claim", now)
            return False

        self._note(sid, "working → break", now,
                   state_version=get_path(done, f"{GD}.state_version"))
        return True

    async def end_break(self, sid: str, now: float) -> bool:
        """break → working with a fresh work period."""
        res = await self.store.find_one_and_update(
            sid, field_equals(f"{GD}.work_state", STATE_BREAK),
            Update(
                set={
                    f"{GD}.work_state": STATE_WORKING,
                    f"{GD}.work_start_time": now,
                    f"{GD}.work_period_id": self._period_id(sid, now),
                    f"{GD}.profits_distributed": False,
                    f"{GD}.sales": [],
                    f"{GD}.events": [],
                    f"{GD}.last_activity": now,
                    f"{GD}.next_shop_refresh": now,
                    "next_trigger": now + _t("break_ended_delay", 10),
                },
                unset=(f"{GD}.break_end_time", f"{GD}.break_start_time"),
                inc={f"{GD}.state_version": 1},
            ))
        if res is None:
            return False
        self._note(sid, "break → working", now,
                   state_version=get_path(res, f"{GD}.state_version"))
        return True

    # ── Profits ──────────────────────────────────────────────────────

    async def _worker_stats(self, workers: list[str]) -> dict[str, PlayerStats]:
        return {pid: await self.stats.get_player_stats(pid) for pid in workers}

    async def distribute_profits(self, sid: str, snapshot: dict, dist_id: str,
                                 now: float) -> ProfitReport | None:
        """Pay the period captured in *snapshot* to whoever is present."""
        workers = await self.presence.present(sid)
        if not workers:
            print(f"[ECON] {sid}: nobody present, no payout")
            return None
        gd = snapshot.get(GD, {})
        report = compute_distribution(
            gd.get("sales") or [], gd.get("events") or [], workers,
            await self._worker_stats(workers), int(gd.get("power", 1)),
            self.rng, gd.get("innkeeper_margin"))
        for pid, payout in report.payouts.items():
            await self.ledger.credit(pid, payout.total, ref=f"{dist_id}:{pid}")
        print(f"[ECON] {sid}: distributed {report.paid_total()}c among "
              f"{len(workers)} worker(s) (gross {report.gross}c, "
              f"innkeeper cut {report.innkeeper_cut}c)")
        self.log.record(sid, "econ", "profits distributed", t=now,
                        details=summarize_report(report))
        return report

    # ── Event application ────────────────────────────────────────────

    async def apply_event(self, sid: str, event: AnyEvent,
                          now: float | None = None) -> bool:
        """Append *event* at most once.  ``False`` for duplicates.

        Only accepted while working; anything recorded during a
        transition or break would be cleared without being paid.
        """
        now = self.clock() if now is None else now
        data = event_to_dict(event)
        path = f"{GD}.sales" if data["kind"] == "sale" else f"{GD}.events"
        res = await self.store.find_one_and_update(
            sid,
            all_of(field_equals(f"{GD}.work_state", STATE_WORKING),
                   no_entry_with(path, "event_id", data["event_id"])),
            Update(push={path: data},
                   inc={f"{GD}.event_sequence": 1},
                   set={f"{GD}.last_activity": now}))
        if res is None:
            return False
        if data["kind"] == "coin_find" and data["amount"] > 0:
            await self.ledger.credit(data["finder"], data["amount"],
                                     ref=data["event_id"])
        return True

    async def record_player_sale(self, sid: str, buyer: str, item_id: str,
                                 purchase_id: str, quantity: int = 1,
                                 price: int | None = None) -> SaleEvent | None:
        """Log a player's shop purchase.

        Returns ``None`` when *purchase_id* is already recorded this
        period (or the session is gone), so a retried purchase is
        harmless.  Raises :class:`InnClosed` when the inn is on break
        or closing out a period; that sale was not taken.
        """
        now = self.clock()
        item = self.events.items.get(item_id)
        unit = item.value if item else 0
        total = price if price is not None else unit * quantity
        cost_basis = math.floor(unit * _tun("inn.economy", "cost_basis_fraction", 0.05)) * quantity
        luck = (await self.stats.get_player_stats(buyer)).luck
        tip, _pct = player_tip(total, luck, self.rng)
        sale = SaleEvent(
            event_id=purchase_id, timestamp=now, item_id=item_id,
            buyer=buyer, buyer_name=buyer, price=total,
            profit=total - cost_basis, tip=tip, is_npc=False,
            quantity=quantity,
        )
        if await self.apply_event(sid, sale, now):
            return sale
        doc = await self.store.find_one(sid)
        if doc is None:
            return None
        state = get_path(doc, f"{GD}.work_state")
        recorded = any(s.get("event_id") == purchase_id
                       for s in get_path(doc, f"{GD}.sales") or ())
        if state != STATE_WORKING and not recorded:
            print(f"[INN] {sid}: purchase {purchase_id} refused, inn is {state}")
            raise InnClosed(sid, state)
        return None

    async def maybe_generate_activity(self, sid: str, doc: dict,
                                      now: float) -> AnyEvent | None:
        gd = doc.get(GD, {})
        last = gd.get("last_activity")
        generate, forced = self.events.should_generate_activity(last, now)
        if not generate:
            return None
        if (not forced and last is not None
                and now - last < _t("message_cooldown", MESSAGE_COOLDOWN)):
            return None

        workers = await self.presence.present(sid)
        ctx = EventContext(
            session_id=sid, power=int(gd.get("power", 1)), now=now,
            workers=workers, stats=await self._worker_stats(workers),
            sales=gd.get("sales") or [], shop_items=self.available_items(gd),
            forced=forced,
        )
        event = self.events.generate(ctx)
        if event is None or not await self.apply_event(sid, event, now):
            return None
        self.log.record(sid, "event", event.kind, t=now,
                        details={"event_id": event.event_id})
        return event

    # ── Shop rotation ────────────────────────────────────────────────

    def available_items(self, gd: dict) -> list[str]:
        shop = self.events.shop
        return list(shop.get("static_items", [])) + list(
            gd.get("current_rotational_items") or [])

    async def refresh_shop(self, sid: str, doc: dict, now: float) -> bool:
        gd = doc.get(GD, {})
        due = gd.get("next_shop_refresh")
        if due is not None and now < due:
            return False
        pool = list(self.events.shop.get("item_pool", []))
        amount = int(_tun("inn.shop", "rotational_amount", 3))
        picks = self.rng.sample(pool, min(amount, len(pool)))
        res = await self.store.find_one_and_update(
            sid, field_equals(f"{GD}.next_shop_refresh", due),
            Update(set={
                f"{GD}.current_rotational_items": picks,
                f"{GD}.next_shop_refresh":
                    now + _t("shop_refresh_interval", SHOP_REFRESH_INTERVAL),
            }))
        if res is not None:
            print(f"[INN] {sid}: shop rotation {picks}")
        return res is not None

    # ── Scheduling ───────────────────────────────────────────────────

    def next_delay(self, gd: dict, now: float) -> float:
        state = gd.get("work_state")
        if state == STATE_BREAK:
            left = (gd.get("break_end_time") or now) - now
            if left <= 10:
                return _t("break_final_delay", 2)
            if left <= 30:
                return _t("break_closing_delay", 5)
            return _t("break_idle_delay", 20)

        work_end = (gd.get("work_start_time") or now) + _t("work_duration", WORK_DURATION)
        until_break = work_end - now
        if until_break <= 60:
            return _t("near_break_delay", 5)
        if until_break <= 120:
            return _t("approaching_break_delay", 10)
        if until_break <= 300:
            return _t("far_break_delay", 20)
        since = now - (gd.get("last_activity") or now)
        if since >= _t("activity_guarantee", ACTIVITY_GUARANTEE) - 10:
            return _t("min_delay", 5)
        return self.rng.uniform(_t("min_delay", 5), _t("max_delay", 15))

    async def schedule_next(self, sid: str, lock_id: str, now: float) -> float | None:
        doc = await self.store.find_one(sid)
        if not doc:
            return None
        delay = self.next_delay(doc.get(GD, {}), now)
        res = await self.store.find_one_and_update(
            sid, field_equals(f"{GD}.lock_id", lock_id),
            Update(set={"next_trigger": now + delay, f"{GD}.retry_count": 0}))
        return delay if res is not None else None

    async def schedule_retry(self, sid: str, now: float | None = None) -> float | None:
        """Push the next trigger out with bounded exponential backoff."""
        now = self.clock() if now is None else now
        res = await self.store.find_one_and_update(
            sid, None, Update(inc={f"{GD}.retry_count": 1}))
        if res is None:
            return None
        n = int(get_path(res, f"{GD}.retry_count", 1))
        delay = min(_t("retry_base_delay", RETRY_BASE_DELAY) * 2 ** (n - 1),
                    _t("retry_max_delay", RETRY_MAX_DELAY))
        await self.store.find_one_and_update(
            sid, None, Update(set={"next_trigger": now + delay}))
        self._note(sid, f"retry #{n} in {delay:.0f}s", now)
        return delay

    # ── Main cycle ───────────────────────────────────────────────────

    async def run_cycle(self, sid: str) -> CycleOutcome:
        now = self.clock()
        doc = await self.store.find_one(sid)
        if not doc or get_path(doc, f"{GD}.gamemode") != MODE_INNKEEPER:
            return CycleOutcome.MISSING

        lock_id = await self.acquire_lock(sid, now)
        if lock_id is None:
            return CycleOutcome.SKIPPED

        try:
            doc = await self.store.find_one(sid) or doc
            doc = await self.initialize_if_needed(sid, doc, now)

            if self.is_stuck(doc, now):
                await self.recover_stuck(sid, doc, now)
                return CycleOutcome.RECOVERED

            if await self.refresh_shop(sid, doc, now):
                doc = await self.store.find_one(sid) or doc

            gd = doc.get(GD, {})
            state = gd.get("work_state")

            if state == STATE_TRANSITIONING:
                # Another worker is mid-transition; leave next_trigger alone
                # so a dead transition shows up as overdue.
                return CycleOutcome.TRANSITIONING

            if state == STATE_BREAK:
                if now >= (gd.get("break_end_time") or 0):
                    if await self.end_break(sid, now):
                        return CycleOutcome.BREAK_ENDED
                await self.schedule_next(sid, lock_id, now)
                return CycleOutcome.ON_BREAK

            if now - (gd.get("work_start_time") or now) >= _t("work_duration", WORK_DURATION):
                if await self.start_break(sid, now):
                    return CycleOutcome.BREAK_STARTED

            await self.maybe_generate_activity(sid, doc, now)
            await self.schedule_next(sid, lock_id, now)
            return CycleOutcome.WORKING
        finally:
            await self.release_lock(sid, lock_id)

    # ── Status ───────────────────────────────────────────────────────

    async def get_inn_status(self, sid: str) -> dict:
        now = self.clock()
        doc = await self.store.find_one(sid)
        gd = (doc or {}).get(GD, {})
        if not doc or not gd.get("work_state"):
            return {"status": "uninitialized",
                    "message": "Inn has not been initialized"}

        status = {
            "state_version": gd.get("state_version", 0),
            "event_sequence": gd.get("event_sequence", 0),
            "retry_count": gd.get("retry_count", 0),
            "next_trigger": doc.get("next_trigger"),
            "work_period_id": gd.get("work_period_id"),
            "recent": self.log.for_session(sid, 10),
        }
        expiry = gd.get("lock_expiry")
        state = gd.get("work_state")

        if expiry is not None and expiry > now:
            status.update(status="locked", lock_id=gd.get("lock_id"),
                          message=f"Locked for another {expiry - now:.0f}s")
        elif self.is_stuck(doc, now):
            status.update(status="stuck", work_state=state,
                          message=f"Overdue by {now - doc['next_trigger']:.0f}s")
        elif state == STATE_BREAK:
            left = max(0.0, (gd.get("break_end_time") or now) - now)
            status.update(status="on_break", time_remaining=left,
                          message=f"On break, {left / 60:.1f} min left")
        elif state == STATE_TRANSITIONING:
            status.update(status="transitioning",
                          message="Closing out the work period")
        else:
            left = max(0.0, (gd.get("work_start_time") or now)
                       + _t("work_duration", WORK_DURATION) - now)
            status.update(status="working", time_until_break=left,
                          sales=len(gd.get("sales") or []),
                          events=len(gd.get("events") or []),
                          message=f"Working, break in {left / 60:.1f} min")
        return status


def summarize_report(report: ProfitReport) -> dict:
    return {
        "gross": report.gross,
        "innkeeper_cut": report.innkeeper_cut,
        "grand_total": report.grand_total,
        "event_costs": report.event_costs,
        "synergy": report.synergy,
        "employee_of_day": report.employee_of_day,
        "payouts": {pid: p.total for pid, p in report.payouts.items()},
    }
