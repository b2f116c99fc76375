"""core/store.py — Session document store.

Every game session is one JSON-compatible document keyed by session
id.  All mutation goes through :meth:`SessionStore.find_one_and_update`,
a single conditional write: the ``where`` predicate and the
:class:`Update` are applied together or not at all.  Nothing in the
simulation does read-modify-write across two store calls.

Two backends:

- :class:`MemoryStore` keeps documents in a dict.  Each call yields to
  the event loop first (the I/O suspension point a real database has),
  then runs predicate + update without yielding again, so the pair is
  atomic with respect to every other coroutine.
- :class:`JsonFileStore` keeps one ``saves/sessions/<id>.json`` per
  session and caches nothing.  Writes re-read the file under a
  per-session file lock (``filelock``), so several processes can share
  one directory, and land via temp file + ``os.replace`` so readers
  never see a torn file.

Paths in an :class:`Update` use dot-notation (``"game_data.sales"``).
"""

from __future__ import annotations
import asyncio
import contextlib
import copy
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from filelock import FileLock, Timeout

from core.errors import StoreError


Predicate = Callable[[dict], bool]

_MISSING = object()


# ── Dotted-path helpers ──────────────────────────────────────────────

def get_path(doc: dict, path: str, default=None):
    node: Any = doc
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def set_path(doc: dict, path: str, value) -> None:
    parts = path.split(".")
    node = doc
    for part in parts[:-1]:
        nxt = node.get(part)
        if not isinstance(nxt, dict):
            nxt = node[part] = {}
        node = nxt
    node[parts[-1]] = value


def unset_path(doc: dict, path: str) -> bool:
    parts = path.split(".")
    node = doc
    for part in parts[:-1]:
        node = node.get(part)
        if not isinstance(node, dict):
            return False
    return node.pop(parts[-1], _MISSING) is not _MISSING


# ── Predicates ───────────────────────────────────────────────────────

def field_equals(path: str, value) -> Predicate:
    return lambda doc: get_path(doc, path) == value


def no_entry_with(path: str, key: str, value) -> Predicate:
    """True when the list at *path* has no entry whose *key* is *value*."""
    def check(doc: dict) -> bool:
        return not any(isinstance(e, dict) and e.get(key) == value
                       for e in get_path(doc, path) or ())
    return check


def all_of(*preds: Predicate) -> Predicate:
    return lambda doc: all(p(doc) for p in preds)


# ── Update description ───────────────────────────────────────────────

@dataclass
class Update:
    """A set of field operations applied atomically to one document.

    ``set_default`` writes only paths that are absent, which is what
    makes additive merges idempotent.  ``push`` appends one value per
    path.
    """
    set: dict[str, Any] = field(default_factory=dict)
    set_default: dict[str, Any] = field(default_factory=dict)
    unset: Iterable[str] = ()
    inc: dict[str, float] = field(default_factory=dict)
    push: dict[str, Any] = field(default_factory=dict)

    def apply(self, doc: dict) -> dict[str, int]:
        """Mutate *doc* in place.  Returns a few counters for callers."""
        created = 0
        for path, value in self.set.items():
            set_path(doc, path, copy.deepcopy(value))
        for path, value in self.set_default.items():
            if get_path(doc, path, _MISSING) is _MISSING:
                set_path(doc, path, copy.deepcopy(value))
                created += 1
        removed = sum(1 for path in self.unset if unset_path(doc, path))
        for path, amount in self.inc.items():
            set_path(doc, path, (get_path(doc, path) or 0) + amount)
        for path, value in self.push.items():
            lst = get_path(doc, path)
            if not isinstance(lst, list):
                lst = []
                set_path(doc, path, lst)
            lst.append(copy.deepcopy(value))
        return {"created": created, "removed": removed}


# ── Store interface ──────────────────────────────────────────────────

class SessionStore:
    """Async document store keyed by session id."""

    async def find_one(self, session_id: str) -> dict | None:
        raise NotImplementedError

    async def insert(self, session_id: str, doc: dict) -> bool:
        raise NotImplementedError

    async def find_one_and_update(self, session_id: str,
                                  where: Predicate | None,
                                  update: Update, *,
                                  upsert: bool = False,
                                  return_before: bool = False) -> dict | None:
        """Apply *update* iff the document exists and *where* holds.

        Returns a copy of the document after the update (or before it,
        with ``return_before``), or ``None`` when nothing was written.
        """
        raise NotImplementedError

    async def delete(self, session_id: str) -> bool:
        raise NotImplementedError

    async def find_ids(self, where: Predicate | None = None) -> list[str]:
        raise NotImplementedError


class MemoryStore(SessionStore):
    """In-process store.  ``latency`` seconds are awaited before each call."""

    def __init__(self, latency: float = 0.0) -> None:
        self._docs: dict[str, dict] = {}
        self.latency = latency
        # Stats
        self.reads = 0
        self.writes = 0

    async def _io(self) -> None:
        await asyncio.sleep(self.latency)

    # ── Reads ────────────────────────────────────────────────────────

    async def find_one(self, session_id: str) -> dict | None:
        await self._io()
        self.reads += 1
        doc = self._load(session_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def find_ids(self, where: Predicate | None = None) -> list[str]:
        await self._io()
        return [sid for sid in self._all_ids()
                if where is None or where(self._load(sid) or {})]

    # ── Writes ───────────────────────────────────────────────────────
    # No awaits after _io(): predicate + update are atomic with respect
    # to every other coroutine.  _exclusive() extends that to other
    # processes for backends that need it.

    async def insert(self, session_id: str, doc: dict) -> bool:
        await self._io()
        with self._exclusive(session_id):
            if self._load(session_id) is not None:
                return False
            doc = copy.deepcopy(doc)
            doc["session_id"] = session_id
            self._save(session_id, doc)
            return True

    async def find_one_and_update(self, session_id: str,
                                  where: Predicate | None,
                                  update: Update, *,
                                  upsert: bool = False,
                                  return_before: bool = False) -> dict | None:
        await self._io()
        with self._exclusive(session_id):
            doc = self._load(session_id)
            if doc is None:
                if not upsert:
                    return None
                doc = {"session_id": session_id}
            if where is not None and not where(doc):
                return None
            work = copy.deepcopy(doc)
            update.apply(work)
            self._save(session_id, work)
        return copy.deepcopy(doc) if return_before else copy.deepcopy(work)

    async def delete(self, session_id: str) -> bool:
        await self._io()
        with self._exclusive(session_id):
            return self._drop(session_id)

    # ── Backend hooks ────────────────────────────────────────────────

    def _exclusive(self, session_id: str):
        return contextlib.nullcontext()

    def _load(self, session_id: str) -> dict | None:
        return self._docs.get(session_id)

    def _all_ids(self) -> list[str]:
        return list(self._docs)

    def _save(self, session_id: str, doc: dict) -> None:
        self._docs[session_id] = doc
        self.writes += 1

    def _drop(self, session_id: str) -> bool:
        return self._docs.pop(session_id, None) is not None


class JsonFileStore(MemoryStore):
    """One JSON file per session, shareable between processes.

    Nothing is cached: every call reads the file, and every write
    re-reads it and applies the update while holding that session's
    ``<id>.json.lock`` file lock, so two processes racing on the same
    predicate can't both win.
    """

    def __init__(self, root: str | Path = "saves/sessions",
                 latency: float = 0.0, lock_timeout: float = 10.0) -> None:
        super().__init__(latency)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.lock_timeout = lock_timeout
        print(f"[STORE] session files in {self.root}")

    def _file(self, session_id: str) -> Path:
        return self.root / f"{session_id}.json"

    @contextlib.contextmanager
    def _exclusive(self, session_id: str):
        lock = FileLock(f"{self._file(session_id)}.lock", timeout=self.lock_timeout)
        try:
            lock.acquire()
        except Timeout as exc:
            print(f"[STORE] {session_id}: file lock busy for {self.lock_timeout}s")
            raise StoreError(f"timed out locking {session_id}") from exc
        try:
            yield
        finally:
            lock.release()

    def _load(self, session_id: str) -> dict | None:
        path = self._file(session_id)
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            print(f"[STORE] unreadable session file {path}: {exc}")
            raise StoreError(f"cannot read {path}: {exc}") from exc

    def _all_ids(self) -> list[str]:
        return sorted(p.stem for p in self.root.glob("*.json"))

    def _save(self, session_id: str, doc: dict) -> None:
        path = self._file(session_id)
        tmp = path.with_suffix(".json.tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(doc, f, indent=1)
            os.replace(tmp, path)
        except OSError as exc:
            raise StoreError(f"cannot write {path}: {exc}") from exc
        self.writes += 1

    def _drop(self, session_id: str) -> bool:
        path = self._file(session_id)
        existed = path.exists()
        path.unlink(missing_ok=True)
        return existed
