"""inn/models.py — Inn records: patrons, items, sales and generated events.

Events are a tagged union discriminated by ``kind``.  Each carries an
``event_id`` (sales use the purchase id) that the controller uses to
apply it at most once.  The stored form is a plain dict produced by
:func:`event_to_dict`.
"""

from __future__ import annotations
from dataclasses import asdict, dataclass, field
from typing import Literal, Union



# ── Static data ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class NPC:
    id: str
    name: str
    wealth: int
    tip_modifier: float = 1.0
    frequency: str = "common"
    budget: str = "medium"
    preferences: tuple[str, ...] = ()
    min_power: int = 1

    @classmethod
    def from_dict(cls, d: dict) -> "NPC":
        return cls(
            id=d["id"], name=d["name"], wealth=int(d["wealth"]),
            tip_modifier=float(d.get("tip_modifier", 1.0)),
            frequency=d.get("frequency", "common"),
            budget=d.get("budget", "medium"),
            preferences=tuple(d.get("preferences", ())),
            min_power=int(d.get("min_power", 1)),
        )


@dataclass(frozen=True)
class Item:
    id: str
    name: str
    value: int
    type: str = "consumable"
    subtype: str = ""

    @classmethod
    def from_dict(cls, d: dict) -> "Item":
        return cls(d["id"], d["name"], int(d["value"]),
                   d.get("type", "consumable"), d.get("subtype", ""))


@dataclass(frozen=True)
class PlayerStats:
    speed: int = 0
    sight: int = 0
    luck: int = 0
    mining: int = 0

    @classmethod
    def from_dict(cls, d: dict | None) -> "PlayerStats":
        d = d or {}
        return cls(int(d.get("speed", 0)), int(d.get("sight", 0)),
                   int(d.get("luck", 0)), int(d.get("mining", 0)))


# ── Events ───────────────────────────────────────────────────────────

@dataclass
class SaleEvent:
    event_id: str
    timestamp: float
    item_id: str
    buyer: str
    buyer_name: str
    price: int
    profit: int
    tip: int = 0
    is_npc: bool = True
    npc_wealth: int = 0
    quantity: int = 1
    kind: Literal["sale"] = "sale"


@dataclass
class Mitigation:
    responder: str
    responder_id: str
    mitigation_type: str          # failed | minor | major | near_total
    original_cost: int
    reduction: float              # fraction in [0, 0.95]
    reduction_percent: int
    stats: dict = field(default_factory=dict)


@dataclass
class BarFightEvent:
    event_id: str
    timestamp: float
    npc1: str
    npc2: str
    reason: str
    cost: int
    mitigation: Mitigation | None = None
    kind: Literal["bar_fight"] = "bar_fight"


@dataclass
class RumorEvent:
    event_id: str
    timestamp: float
    npc1: str
    npc2: str
    rumor: str
    kind: Literal["rumor"] = "rumor"


@dataclass
class CoinFindEvent:
    event_id: str
    timestamp: float
    finder: str
    amount: int
    luck_bonus: int = 0
    power_level: int = 1
    description: str = ""
    kind: Literal["coin_find"] = "coin_find"


@dataclass
class InnkeeperCommentEvent:
    event_id: str
    timestamp: float
    business_level: str
    comment: str
    kind: Literal["innkeeper_comment"] = "innkeeper_comment"


GameEvent = Union[BarFightEvent, RumorEvent, CoinFindEvent, InnkeeperCommentEvent]
AnyEvent = Union[SaleEvent, GameEvent]

_KINDS: dict[str, type] = {
    "sale": SaleEvent,
    "bar_fight": BarFightEvent,
    "rumor": RumorEvent,
    "coin_find": CoinFindEvent,
    "innkeeper_comment": InnkeeperCommentEvent,
}


def event_to_dict(event: AnyEvent) -> dict:
    return asdict(event)


def event_from_dict(data: dict) -> AnyEvent:
    kind = data.get("kind")
    cls = _KINDS.get(kind)
    if cls is None:
        raise ValueError(f"unknown event kind {kind!r}")
    fields = dict(data)
    if cls is BarFightEvent and fields.get("mitigation"):
        fields["mitigation"] = Mitigation(**fields["mitigation"])
    return cls(**fields)


def event_cost(data: dict) -> int:
    """Money an event costs the team (only bar fights cost anything)."""
    return int(data.get("cost", 0)) if data.get("kind") == "bar_fight" else 0
