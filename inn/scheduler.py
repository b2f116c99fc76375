"""inn/scheduler.py — Cooperative polling driver for inn sessions.

Each session stores its own ``next_trigger``.  The driver keeps a
priority queue of ``(next_trigger, seq, session_id)`` and, on every
tick, runs every due session's cycle concurrently.  After a cycle the
session is re-posted at whatever ``next_trigger`` the controller wrote.

Several drivers (processes, workers) may share one store; the
controller's lock makes that safe, and :meth:`CycleDriver.poll_store`
lets a driver discover due sessions it never posted itself.

    driver = CycleDriver(controller)
    driver.post("chan-1", time.time())
    await driver.tick(time.time())
"""

from __future__ import annotations
import asyncio
import heapq
import traceback
from dataclasses import dataclass, field

from core.constants import MODE_INNKEEPER, RETRY_BASE_DELAY
from core.errors import StoreError
from core.store import get_path
from core.tuning import get as _tun
from inn.controller import CycleOutcome, InnCycleController


@dataclass(order=True)
class ScheduledCycle:
    """One pending cycle in the driver queue, earliest first."""
    time: float
    # heapq tiebreaker (insertion order)
    _seq: int = field(compare=True, repr=False)
    session_id: str = field(compare=False, default="")
    cancelled: bool = field(compare=False, default=False)


class CycleDriver:
    """Priority-queue driver that runs due inn cycles."""

    def __init__(self, controller: InnCycleController) -> None:
        self.controller = controller
        self._queue: list[ScheduledCycle] = []
        self._seq: int = 0
        self._pending: dict[str, ScheduledCycle] = {}
        # Stats
        self.cycles_run: int = 0
        self.failures: int = 0
        self.outcomes: dict[str, int] = {}

    # ── Posting ──────────────────────────────────────────────────────

    def post(self, session_id: str, time: float) -> ScheduledCycle:
        """Schedule *session_id*, replacing any earlier pending entry."""
        old = self._pending.get(session_id)
        if old is not None:
            old.cancelled = True
        self._seq += 1
        entry = ScheduledCycle(time=time, _seq=self._seq, session_id=session_id)
        heapq.heappush(self._queue, entry)
        self._pending[session_id] = entry
        return entry

    def cancel(self, session_id: str) -> bool:
        entry = self._pending.pop(session_id, None)
        if entry is None:
            return False
        entry.cancelled = True
        return True

    async def poll_store(self, now: float) -> int:
        """Post every innkeeper session in the store that is due."""
        due = await self.controller.store.find_ids(
            lambda d: get_path(d, "game_data.gamemode") == MODE_INNKEEPER
            and (d.get("next_trigger") or 0) <= now)
        for sid in due:
            if sid not in self._pending:
                self.post(sid, now)
        return len(due)

    # ── Tick ─────────────────────────────────────────────────────────

    def peek_time(self) -> float:
        """Return the time of the next cycle, or inf if empty."""
        while self._queue and self._queue[0].cancelled:
            heapq.heappop(self._queue)
        return self._queue[0].time if self._queue else float("inf")

    def _pop_due(self, now: float) -> list[str]:
        due = []
        while self._queue and (self._queue[0].cancelled
                               or self._queue[0].time <= now):
            entry = heapq.heappop(self._queue)
            if entry.cancelled:
                continue
            self._pending.pop(entry.session_id, None)
            due.append(entry.session_id)
        return due

    async def _run_one(self, sid: str, now: float) -> CycleOutcome | None:
        try:
            outcome = await self.controller.run_cycle(sid)
        except StoreError as exc:
            print(f"[SCHED] {sid}: cycle failed: {exc}")
            return await self._back_off(sid, now)
        except Exception as exc:
            # Presence, stats or wallet trouble: same backoff as the store
            print(f"[SCHED] {sid}: cycle crashed: {exc!r}")
            traceback.print_exc()
            return await self._back_off(sid, now)

        self.cycles_run += 1
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1
        if outcome is CycleOutcome.MISSING:
            return outcome

        doc = await self.controller.store.find_one(sid)
        trigger = (doc or {}).get("next_trigger") or now
        if trigger <= now:
            # Transitioning or contended: look again shortly.
            trigger = now + _tun("inn.timing", "min_delay", 5)
        self.post(sid, trigger)
        return outcome

    async def _back_off(self, sid: str, now: float) -> None:
        self.failures += 1
        delay = await self._retry(sid, now)
        fallback = _tun("inn.timing", "retry_base_delay", RETRY_BASE_DELAY)
        self.post(sid, now + (delay or fallback))
        return None

    async def _retry(self, sid: str, now: float) -> float | None:
        try:
            return await self.controller.schedule_retry(sid, now)
        except StoreError as exc:
            print(f"[SCHED] {sid}: could not record retry: {exc}")
            return None

    async def tick(self, now: float) -> dict[str, CycleOutcome | None]:
        """Run every cycle due at *now*, different sessions concurrently."""
        due = self._pop_due(now)
        if not due:
            return {}
        results = await asyncio.gather(*(self._run_one(sid, now) for sid in due))
        return dict(zip(due, results))

    # ── Queries ──────────────────────────────────────────────────────

    def pending_count(self) -> int:
        return len(self._pending)

    def debug_dump(self, limit: int = 20) -> list[str]:
        entries = sorted(self._pending.values(), key=lambda e: (e.time, e._seq))[:limit]
        return [f"{e.time:.1f}  {e.session_id}" for e in entries]
