"""inn/events.py — Procedural inn activity: NPC sales and random events.

One call to :meth:`EventGenerator.generate` yields at most one event:

1. an NPC sale (70 %, 85 % when activity is overdue),
2. otherwise a random event (60 %, 80 % forced) split
   bar fight 20 % / rumor 20 % / coin find 60 %,
3. otherwise, only when forced, an innkeeper comment.

Bar fight damage
----------------
    base     = (wealth₁ + wealth₂) × 10
    scaled   = base × power_multiplier[p] × (1 ± variance[p])
    score    = speed×0.4 + sight×0.4 + luck×0.2     (random present worker)
    cut      = clamp(score / threshold[p], 0, 0.95)
    cost     = floor(scaled × (1 − cut))

Randomness only enters through which NPCs/worker are picked and the
variance draw; given those the cost is deterministic.
"""

from __future__ import annotations
import math
import random
from dataclasses import dataclass, field

from core.constants import ACTIVITY_GUARANTEE
from core.tuning import get as _tun, load_table, power_table
from inn.economy import npc_tip
from inn.models import (
    NPC, AnyEvent, BarFightEvent, CoinFindEvent, InnkeeperCommentEvent,
    Item, Mitigation, PlayerStats, RumorEvent, SaleEvent,
)


# ── Configuration fallbacks ──────────────────────────────────────────

_FIGHT_POWER_MULT = {1: 1.0, 2: 1.5, 3: 2.0, 4: 3.0, 5: 4.0, 6: 6.0, 7: 8.0}
_FIGHT_VARIANCE = {1: 0.2, 2: 0.2, 3: 0.25, 4: 0.25, 5: 0.3, 6: 0.3, 7: 0.35}
_FIGHT_THRESHOLD = {1: 5, 2: 10, 3: 20, 4: 35, 5: 50, 6: 75, 7: 100}
_COIN_POWER_MULT = _FIGHT_POWER_MULT

_FREQUENCY_WEIGHTS = {"very_common": 5, "common": 3, "uncommon": 2, "rare": 1}
_BUDGETS = {"low": 100, "medium": 400, "high": 10000}


@dataclass
class EventContext:
    """What the generator may look at for one session tick."""
    session_id: str
    power: int
    now: float
    workers: list[str] = field(default_factory=list)
    stats: dict[str, PlayerStats] = field(default_factory=dict)
    sales: list[dict] = field(default_factory=list)
    shop_items: list[str] | None = None
    forced: bool = False


# ── Bar fight arithmetic ─────────────────────────────────────────────

def fight_base_cost(wealth1: int, wealth2: int) -> int:
    return (wealth1 + wealth2) * int(_tun("inn.bar_fight", "wealth_factor", 10))


def scaled_fight_cost(wealth1: int, wealth2: int, power: int,
                      rng: random.Random) -> float:
    mult = power_table("inn.bar_fight", "power_multiplier", _FIGHT_POWER_MULT)
    var = power_table("inn.bar_fight", "variance", _FIGHT_VARIANCE)
    v = var.get(power, 0.2)
    return fight_base_cost(wealth1, wealth2) * mult.get(power, 1.0) * (1 + rng.uniform(-v, v))


def mitigation_score(stats: PlayerStats) -> float:
    return (stats.speed * _tun("inn.bar_fight", "speed_weight", 0.4)
            + stats.sight * _tun("inn.bar_fight", "sight_weight", 0.4)
            + stats.luck * _tun("inn.bar_fight", "luck_weight", 0.2))


def reduction_fraction(stats: PlayerStats, power: int) -> float:
    threshold = power_table("inn.bar_fight", "threshold", _FIGHT_THRESHOLD).get(power, 5)
    cap = _tun("inn.bar_fight", "max_reduction", 0.95)
    return max(0.0, min(cap, mitigation_score(stats) / threshold))


def mitigated_cost(scaled: float, reduction: float) -> float:
    return scaled * (1 - reduction)


def mitigation_type(reduction: float) -> str:
    if reduction <= 0:
        return "failed"
    if reduction < 0.3:
        return "minor"
    if reduction < 0.7:
        return "major"
    return "near_total"


# ── Coin finds ───────────────────────────────────────────────────────

def coin_find_amount(luck: int, power: int, rng: random.Random) -> tuple[int, int]:
    """``(total, luck_bonus)`` for a coin find by a worker with *luck*."""
    rare = (luck > _tun("inn.coin_find", "rare_threshold", 50)
            and rng.random() < _tun("inn.coin_find", "rare_chance", 0.3))
    if rare:
        pool = _tun("inn.coin_find", "rare_amounts", [7, 10, 15])
    else:
        pool = _tun("inn.coin_find", "base_amounts", [1, 2, 3, 4, 5])
    mult = power_table("inn.coin_find", "power_multiplier", _COIN_POWER_MULT)
    base = math.floor(rng.choice(pool) * mult.get(power, 1.0))
    bonus = math.floor(base * luck / _tun("inn.coin_find", "luck_divisor", 300))
    return base + bonus, bonus


# ── Generator ────────────────────────────────────────────────────────

class EventGenerator:
    """Draws inn activity from the NPC roster and item catalogue."""

    def __init__(self, npcs: list[NPC], items: list[Item],
                 fights: list[dict] | None = None,
                 rumors: list[str] | None = None,
                 comments: dict[str, list[str]] | None = None,
                 innkeeper: str = "The innkeeper",
                 shop: dict | None = None,
                 rng: random.Random | None = None) -> None:
        self.npcs = {n.id: n for n in npcs}
        self.items = {i.id: i for i in items}
        self.fights = list(fights or [])
        self.rumors = list(rumors or ["nothing much is happening"])
        self.comments = comments or {}
        self.innkeeper = innkeeper
        self.shop = shop or {"static_items": list(self.items), "item_pool": []}
        self.rng = rng or random.Random()

    @classmethod
    def from_tables(cls, rng: random.Random | None = None) -> "EventGenerator":
        """Build from ``data/npcs.toml`` and ``data/items.toml``."""
        people = load_table("npcs")
        catalogue = load_table("items")
        return cls(
            npcs=[NPC.from_dict(d) for d in people.get("npc", [])],
            items=[Item.from_dict(d) for d in catalogue.get("item", [])],
            fights=people.get("fight", []),
            rumors=people.get("rumors", {}).get("lines"),
            comments=people.get("comments"),
            innkeeper=catalogue.get("shop", {}).get("innkeeper", "The innkeeper"),
            shop=catalogue.get("shop"),
            rng=rng,
        )

    def _event_id(self, kind: str, ctx: EventContext) -> str:
        return f"{kind}-{ctx.session_id}-{int(ctx.now * 1000)}-{self.rng.getrandbits(32):08x}"

    # ── Dispatch ─────────────────────────────────────────────────────

    def should_generate_activity(self, last_activity: float | None,
                                 now: float) -> tuple[bool, bool]:
        """``(generate, forced)`` for this tick."""
        guarantee = _tun("inn.timing", "activity_guarantee", ACTIVITY_GUARANTEE)
        if last_activity is None or now - last_activity >= guarantee:
            return True, True
        return self.rng.random() < _tun("inn.events", "activity_chance", 0.30), False

    def select_event_type(self) -> str:
        r = self.rng.random()
        fight = _tun("inn.events", "bar_fight_weight", 0.20)
        rumor = _tun("inn.events", "rumor_weight", 0.20)
        if r < fight:
            return "bar_fight"
        if r < fight + rumor:
            return "rumor"
        return "coin_find"

    def generate(self, ctx: EventContext) -> AnyEvent | None:
        sale_chance = _tun("inn.events", "npc_sale_chance_forced" if ctx.forced
                           else "npc_sale_chance", 0.85 if ctx.forced else 0.70)
        if self.rng.random() < sale_chance:
            sale = self.generate_npc_sale(ctx)
            if sale:
                return sale

        event_chance = _tun("inn.events", "random_event_chance_forced" if ctx.forced
                            else "random_event_chance", 0.80 if ctx.forced else 0.60)
        if self.rng.random() < event_chance:
            kind = self.select_event_type()
            event = {"bar_fight": self.generate_bar_fight,
                     "rumor": self.generate_rumor,
                     "coin_find": self.generate_coin_find}[kind](ctx)
            if event:
                return event

        if ctx.forced or not _tun("inn.events", "comment_only_when_forced", True):
            return self.generate_innkeeper_comment(ctx)
        return None

    # ── NPC sales ────────────────────────────────────────────────────

    def eligible_npcs(self, power: int) -> list[NPC]:
        return [n for n in self.npcs.values() if n.min_power <= power]

    def npc_weight(self, npc: NPC, power: int) -> int:
        weights = _tun("inn.npc_selection", "frequency_weights", None) or _FREQUENCY_WEIGHTS
        w = int(weights.get(npc.frequency, 1))
        if power <= 2:
            if npc.wealth <= 3:
                w *= _tun("inn.npc_selection.low_power", "poor_multiplier", 4)
            elif npc.wealth <= 5:
                w *= _tun("inn.npc_selection.low_power", "middle_multiplier", 2)
            else:
                w = max(1, w // _tun("inn.npc_selection.low_power", "rich_divisor", 2))
        elif power <= 4:
            if 4 <= npc.wealth <= 6:
                w *= _tun("inn.npc_selection.mid_power", "middle_multiplier", 2)
            if npc.wealth >= 6:
                w *= _tun("inn.npc_selection.mid_power", "wealthy_multiplier", 3)
        else:
            if npc.wealth >= 7:
                w *= _tun("inn.npc_selection.high_power", "rich_multiplier", 5)
            elif npc.wealth >= 5:
                w *= _tun("inn.npc_selection.high_power", "wealthy_multiplier", 3)
            elif npc.wealth <= 3:
                w = max(1, w // _tun("inn.npc_selection.high_power", "poor_divisor", 3))
        return int(w)

    def select_npc_by_power(self, power: int) -> NPC | None:
        pool = self.eligible_npcs(power)
        if not pool:
            return None
        weights = [self.npc_weight(n, power) for n in pool]
        return self.rng.choices(pool, weights=weights, k=1)[0]

    def select_item_for_npc(self, npc: NPC, items: list[Item]) -> Item | None:
        liked = [i for i in items
                 if i.type in npc.preferences or i.subtype in npc.preferences]
        pool = liked or items
        limits = {k: _tun("inn.npc_selection", f"{k}_budget", v)
                  for k, v in _BUDGETS.items()}
        cap = limits.get(npc.budget, limits["high"])
        pool = [i for i in pool if i.value <= cap]
        return self.rng.choice(pool) if pool else None

    def consumables(self, ids: list[str] | None) -> list[Item]:
        items = self.items.values() if ids is None else (
            self.items[i] for i in ids if i in self.items)
        return [i for i in items
                if i.type == "consumable" or i.subtype in ("food", "drink")]

    def generate_npc_sale(self, ctx: EventContext) -> SaleEvent | None:
        items = self.consumables(ctx.shop_items)
        if not items:
            return None
        npc = self.select_npc_by_power(ctx.power)
        if npc is None:
            return None
        item = self.select_item_for_npc(npc, items)
        if item is None:
            return None

        lo = _tun("inn.economy", "price_fluctuation_min", 0.8)
        hi = _tun("inn.economy", "price_fluctuation_max", 1.2)
        price = math.floor(item.value * self.rng.uniform(lo, hi))
        cost_basis = math.floor(item.value * _tun("inn.economy", "cost_basis_fraction", 0.05))
        tip = npc_tip(npc, price, ctx.power, len(ctx.workers))
        return SaleEvent(
            event_id=self._event_id("sale", ctx), timestamp=ctx.now,
            item_id=item.id, buyer=npc.id, buyer_name=npc.name,
            price=price, profit=price - cost_basis, tip=tip,
            is_npc=True, npc_wealth=npc.wealth,
        )

    # ── Random events ────────────────────────────────────────────────

    def _fight_pair(self, power: int) -> tuple[NPC, NPC, str] | None:
        options = []
        for f in self.fights:
            a, b = self.npcs.get(f["npc1"]), self.npcs.get(f["npc2"])
            if a and b and a.min_power <= power and b.min_power <= power:
                options.append((a, b, f.get("reason", "a spilled drink")))
        return self.rng.choice(options) if options else None

    def generate_bar_fight(self, ctx: EventContext) -> BarFightEvent | None:
        pair = self._fight_pair(ctx.power)
        if pair is None:
            return None
        a, b, reason = pair
        scaled = scaled_fight_cost(a.wealth, b.wealth, ctx.power, self.rng)

        mitigation = None
        reduction = 0.0
        if ctx.workers:
            responder = self.rng.choice(ctx.workers)
            st = ctx.stats.get(responder, PlayerStats())
            reduction = reduction_fraction(st, ctx.power)
            mitigation = Mitigation(
                responder=responder, responder_id=responder,
                mitigation_type=mitigation_type(reduction),
                original_cost=math.floor(scaled),
                reduction=reduction,
                reduction_percent=round(reduction * 100),
                stats={"speed": st.speed, "sight": st.sight, "luck": st.luck,
                       "weighted": mitigation_score(st)},
            )
        cost = math.floor(mitigated_cost(scaled, reduction))
        return BarFightEvent(
            event_id=self._event_id("bar_fight", ctx), timestamp=ctx.now,
            npc1=a.name, npc2=b.name, reason=reason, cost=cost,
            mitigation=mitigation,
        )

    def generate_rumor(self, ctx: EventContext) -> RumorEvent | None:
        pool = self.eligible_npcs(ctx.power)
        if len(pool) < 2:
            return None
        a, b = self.rng.sample(pool, 2)
        return RumorEvent(
            event_id=self._event_id("rumor", ctx), timestamp=ctx.now,
            npc1=a.name, npc2=b.name, rumor=self.rng.choice(self.rumors),
        )

    def generate_coin_find(self, ctx: EventContext) -> CoinFindEvent | None:
        if not ctx.workers:
            return None
        finder = self.rng.choice(ctx.workers)
        luck = ctx.stats.get(finder, PlayerStats()).luck
        amount, bonus = coin_find_amount(luck, ctx.power, self.rng)
        return CoinFindEvent(
            event_id=self._event_id("coin_find", ctx), timestamp=ctx.now,
            finder=finder, amount=amount, luck_bonus=bonus,
            power_level=ctx.power,
            description=f"found {amount} coins under a table",
        )

    def business_level(self, sales: list[dict], now: float) -> str:
        window = _tun("inn.events", "recent_sales_window", 60)
        recent = sum(1 for s in sales if now - float(s.get("timestamp", 0)) < window)
        if recent >= _tun("inn.events", "busy_sales", 5):
            return "busy"
        if recent >= _tun("inn.events", "moderate_sales", 2):
            return "moderate"
        return "slow"

    def generate_innkeeper_comment(self, ctx: EventContext) -> InnkeeperCommentEvent:
        level = self.business_level(ctx.sales, ctx.now)
        lines = self.comments.get(level) or ["looks around the room"]
        return InnkeeperCommentEvent(
            event_id=self._event_id("innkeeper_comment", ctx), timestamp=ctx.now,
            business_level=level,
            comment=f"{self.innkeeper} {self.rng.choice(lines)}",
        )
