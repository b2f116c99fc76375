"""inn/collaborators.py — Who is present, what their stats are, and wallets.

The chat platform owns presence and player stats; the controller only
sees these small interfaces.  ``StaticPresence`` / ``StaticStats`` are
the in-process versions used by tests and local runs.

``Ledger`` is a wallet store on top of a :class:`SessionStore`.  Each
credit carries a reference (``"<distribution id>:<player>"``,
``"<event id>"``) and a reference is only ever paid once.
"""

from __future__ import annotations
from typing import Protocol

from core.store import SessionStore, Update, get_path
from inn.models import PlayerStats


class PresenceProvider(Protocol):
    async def present(self, session_id: str) -> list[str]: ...


class StatsProvider(Protocol):
    async def get_player_stats(self, player_id: str) -> PlayerStats: ...


class StaticPresence:
    def __init__(self, members: dict[str, list[str]] | None = None) -> None:
        self.members = {k: list(v) for k, v in (members or {}).items()}

    def set(self, session_id: str, players: list[str]) -> None:
        self.members[session_id] = list(players)

    async def present(self, session_id: str) -> list[str]:
        return list(self.members.get(session_id, []))


class StaticStats:
    def __init__(self, stats: dict[str, PlayerStats | dict] | None = None) -> None:
        self.stats = {pid: s if isinstance(s, PlayerStats) else PlayerStats.from_dict(s)
                      for pid, s in (stats or {}).items()}

    async def get_player_stats(self, player_id: str) -> PlayerStats:
        return self.stats.get(player_id, PlayerStats())


class Ledger:
    """Coin balances, one document per player."""

    def __init__(self, store: SessionStore) -> None:
        self.store = store

    @staticmethod
    def _doc_id(player_id: str) -> str:
        return f"wallet-{player_id}"

    async def balance(self, player_id: str) -> int:
        doc = await self.store.find_one(self._doc_id(player_id))
        return int(doc.get("money", 0)) if doc else 0

    async def credit(self, player_id: str, amount: int, ref: str) -> bool:
        """Add *amount* unless *ref* was already paid.  ``False`` if it was."""
        refs_path = f"refs.{ref.replace('.', '_')}"
        res = await self.store.find_one_and_update(
            self._doc_id(player_id),
            lambda d: get_path(d, refs_path) is None,
            Update(inc={"money": int(amount)}, set={refs_path: int(amount)}),
            upsert=True)
        return res is not None
