"""inn/economy.py — Tips, salaries and end-of-shift profit distribution.

Everything here is pure arithmetic over plain records.  Randomness
(player tips, employee of the day) comes from the ``random.Random``
the caller passes in, so a seeded generator gives repeatable payouts.

Distribution of one work period
-------------------------------
    gross       = sales profit + tips + synergy − event costs
    innkeeper   = floor(gross × margin)        (only when gross > 0)
    per worker  = base salary + effectiveness bonus
                + share of each sale they're eligible for
                + synergy share − event cost share   (floored at 0)

A player never earns from their own purchase.  The innkeeper's margin
scales the sale, synergy and event-cost pools alike before they are
split, so the shared part of the payouts adds up to
``gross − innkeeper`` (less rounding).
"""

from __future__ import annotations
import math
import random
from dataclasses import dataclass, field

from core.tuning import get as _tun, power_table
from inn.models import NPC, PlayerStats, event_cost


# ── Configuration ────────────────────────────────────────────────────

_MIN_TIP_PERCENT = {1: 0.10, 2: 0.10, 3: 0.10, 4: 0.15, 5: 0.15, 6: 0.25, 7: 0.25}

_TIERS = (
    ("poor", 0), ("decent", 10), ("average", 25),
    ("good", 50), ("excellent", 100), ("legendary", 150),
)


# ── Salaries ─────────────────────────────────────────────────────────

def base_salary(power: int) -> int:
    return int(_tun("inn.economy", "base_salary", 100)) * 2 ** (power - 1)


def performance_tier(stats: PlayerStats) -> str:
    """Tier from speed + sight; each tier runs up to the next one's floor."""
    total = stats.speed + stats.sight
    bounds = _tun("inn.stats", "tiers", None) or dict(_TIERS)
    tier = "poor"
    for name, floor in sorted(bounds.items(), key=lambda kv: kv[1]):
        if total >= floor:
            tier = name
    return tier


def effectiveness_bonus(stats: PlayerStats, salary: int) -> tuple[int, float]:
    """Stat bonus on top of *salary*.  Returns ``(bonus, multiplier)``."""
    extra = 0.0
    for stat, per_point, cap in (("speed", 0.005, 0.5), ("sight", 0.004, 0.4),
                                 ("luck", 0.002, 0.2), ("mining", 0.001, 0.1)):
        rate = _tun("inn.stats", f"{stat}_per_point", per_point)
        limit = _tun("inn.stats", f"{stat}_cap", cap)
        extra += min(getattr(stats, stat) * rate, limit)
    multiplier = 1 + extra
    return math.floor(salary * extra), multiplier


# ── Tips ─────────────────────────────────────────────────────────────

def min_tip_percent(power: int) -> float:
    table = power_table("inn.economy.tips", "min_percent", _MIN_TIP_PERCENT)
    return table.get(power, _MIN_TIP_PERCENT[1])


def npc_tip(npc: NPC, price: int, power: int, workers: int) -> int:
    """Tip an NPC leaves on a sale of *price*.

    ``workers`` is the head count present; more hands means better
    service (log-scaled, no bonus for a single worker).
    """
    base_pct = _tun("inn.economy.tips", "base_percentage", 0.10)
    wealth_step = _tun("inn.economy.tips", "wealth_step", 0.15)
    power_scaling = _tun("inn.economy.tips", "power_scaling", 0.33)
    teamwork = _tun("inn.economy.tips", "teamwork_factor", 0.15)

    power_mult = 1 + (power - 1) * power_scaling
    wealth_mult = 1 + npc.wealth * wealth_step * power_mult
    teamwork_bonus = 1 + (math.log(max(workers, 1) + 1) - math.log(2)) * teamwork

    tip = max(price * min_tip_percent(power),
              price * base_pct * npc.tip_modifier * wealth_mult * teamwork_bonus)
    return math.floor(tip)


def player_tip(price: int, luck: int, rng: random.Random) -> tuple[int, float]:
    """Luck-scaled tip on a player purchase.  Returns ``(tip, percent)``."""
    base = _tun("inn.economy.tips", "player_base_percent", 10)
    spread = _tun("inn.economy.tips", "player_random_percent", 90)
    divisor = _tun("inn.economy.tips", "player_luck_divisor", 50)
    exponent = _tun("inn.economy.tips", "player_luck_exponent", 1.5)

    pct = base + rng.random() * spread * (1 + (luck / divisor) ** exponent)
    if (luck > _tun("inn.economy.tips", "massive_tip_luck", 100)
            and rng.random() < _tun("inn.economy.tips", "massive_tip_chance", 0.10)):
        pct *= 1 + luck / 100
    return math.floor(price * pct / 100), pct


# ── Profit distribution ──────────────────────────────────────────────

@dataclass
class Payout:
    player_id: str
    salary: int = 0
    effectiveness_bonus: int = 0
    effectiveness_multiplier: float = 1.0
    tier: str = "average"
    sales_share: int = 0
    tip_share: int = 0
    synergy_share: int = 0
    event_cost_share: int = 0
    employee_of_day: bool = False
    total: int = 0


@dataclass
class ProfitReport:
    workers: list[str]
    power: int
    total_sales: int = 0
    sales_profit: int = 0
    tips: int = 0
    synergy: int = 0
    event_costs: int = 0
    gross: int = 0
    innkeeper_margin: float = 0.1
    innkeeper_cut: int = 0
    grand_total: int = 0
    employee_of_day: str | None = None
    payouts: dict[str, Payout] = field(default_factory=dict)

    def paid_total(self) -> int:
        return sum(p.total for p in self.payouts.values())


def synergy_bonus(profit_and_tips: int, workers: int) -> int:
    if workers <= 1:
        return 0
    factor = _tun("inn.economy", "synergy_factor", 0.15)
    return math.floor(profit_and_tips * math.log(workers) * factor)


def compute_distribution(sales: list[dict], events: list[dict],
                         workers: list[str],
                         stats: dict[str, PlayerStats],
                         power: int,
                         rng: random.Random,
                         margin: float | None = None) -> ProfitReport:
    """Work out every worker's payout for one work period.

    *sales* and *events* are the stored dicts of the period.  Returns a
    report with ``payouts`` empty when nobody is present.
    """
    if margin is None:
        margin = _tun("inn.economy", "innkeeper_margin", 0.10)
    workers = list(dict.fromkeys(workers))
    n = len(workers)

    rep = ProfitReport(workers=workers, power=power, innkeeper_margin=margin)
    rep.total_sales = sum(int(s.get("price", 0)) for s in sales)
    rep.sales_profit = sum(int(s.get("profit", 0)) for s in sales)
    rep.tips = sum(int(s.get("tip", 0)) for s in sales)
    rep.event_costs = sum(event_cost(e) for e in events)
    rep.synergy = synergy_bonus(rep.sales_profit + rep.tips, n)
    rep.gross = rep.sales_profit + rep.tips + rep.synergy - rep.event_costs
    rep.innkeeper_cut = math.floor(rep.gross * margin) if rep.gross > 0 else 0
    rep.grand_total = rep.gross - rep.innkeeper_cut

    if n == 0:
        return rep

    keep = 1 - margin if rep.gross > 0 else 1.0
    salary = base_salary(power)

    for pid in workers:
        st = stats.get(pid, PlayerStats())
        bonus, mult = effectiveness_bonus(st, salary)
        rep.payouts[pid] = Payout(pid, salary=salary, effectiveness_bonus=bonus,
                                  effectiveness_multiplier=mult,
                                  tier=performance_tier(st))

    # Per sale: the buyer doesn't profit from their own purchase
    for sale in sales:
        eligible = workers if sale.get("is_npc", True) else [
            pid for pid in workers if pid != sale.get("buyer")]
        if not eligible:
            continue
        k = len(eligible)
        profit_each = math.floor(int(sale.get("profit", 0)) * keep / k)
        tip_each = math.floor(int(sale.get("tip", 0)) * keep / k)
        for pid in eligible:
            rep.payouts[pid].sales_share += profit_each
            rep.payouts[pid].tip_share += tip_each

    synergy_each = math.floor(rep.synergy * keep / n)
    cost_each = math.floor(rep.event_costs * keep / n)

    for p in rep.payouts.values():
        p.synergy_share = synergy_each
        p.event_cost_share = cost_each
        earned = (p.salary + p.effectiveness_bonus + p.sales_share
                  + p.tip_share + p.synergy_share)
        p.total = max(0, earned - cost_each)

    if n >= _tun("inn.economy", "employee_of_day_min_workers", 2):
        star = rng.choice(workers)
        rep.employee_of_day = star
        rep.payouts[star].employee_of_day = True
        rep.payouts[star].total *= int(_tun("inn.economy",
                                            "employee_of_day_multiplier", 2))
    return rep
