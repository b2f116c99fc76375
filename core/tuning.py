"""core/tuning.py — Data-driven tuning constants and static tables.

All economy, timing and rail numbers live in ``data/tuning.toml``.
The file is read lazily on first access, so any module can do::

    from core.tuning import get
    delay = get("inn.timing", "lock_timeout", 30.0)

Static game tables (NPC roster, item catalogue) live beside it and are
read with :func:`load_table`.  Tests pin values with :func:`override`
and undo them with :func:`reload`.
"""

from __future__ import annotations
import tomllib
from pathlib import Path
from typing import Any


DATA_DIR = Path(__file__).resolve().parent.parent / "data"

_data: dict = {}
_path: Path | None = None
_loaded = False
_tables: dict[str, dict] = {}


def load(path: str | Path | None = None) -> None:
    """Load (or reload) tuning constants from *path*.

    If *path* is ``None``, default to ``data/tuning.toml``.  A missing
    file is not an error: every caller passes its own default.
    """
    global _data, _path, _loaded

    path = DATA_DIR / "tuning.toml" if path is None else Path(path)
    _path = path
    _loaded = True

    if not path.exists():
        print(f"[TUNING] {path} not found, using built-in defaults")
        _data = {}
        return

    with open(path, "rb") as f:
        _data = tomllib.load(f)

    print(f"[TUNING] Loaded {_count_leaves(_data)} values from {path}")


def reload() -> None:
    """Re-read the tuning file from disk, dropping any overrides."""
    _tables.clear()
    load(_path)


def _root() -> dict:
    if not _loaded:
        load()
    return _data


def _walk(section_path: str) -> Any:
    node: Any = _root()
    for part in section_path.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part)
        if node is None:
            return None
    return node


def get(section: str, key: str, default=None):
    """Read a tuning value.

    *section* uses dot-notation to traverse nested tables, e.g.
    ``"inn.economy.tips"`` looks up ``[inn.economy.tips]``.

    >>> get("mining.rails", "iron_per_tile", 1)
    1
    """
    node = _walk(section)
    if isinstance(node, dict):
        return node.get(key, default)
    return default


def section(section_path: str) -> dict:
    """Return an entire section dict (shallow copy), or empty dict."""
    node = _walk(section_path)
    return dict(node) if isinstance(node, dict) else {}


def power_table(section_path: str, key: str,
                default: dict[int, float]) -> dict[int, float]:
    """Read a per-power-level table keyed ``"1"`` … ``"7"`` in TOML.

    TOML keys are always strings; callers want ``int`` power levels.
    """
    raw = get(section_path, key)
    if not isinstance(raw, dict):
        return dict(default)
    return {int(k): float(v) for k, v in raw.items()}


def override(section_path: str, key: str, value) -> None:
    """Pin a value in memory (tests, admin commands)."""
    node = _root()
    for part in section_path.split("."):
        node = node.setdefault(part, {})
    node[key] = value


def load_table(name: str) -> dict:
    """Read ``data/<name>.toml`` once and cache it.

    Raises ``FileNotFoundError`` if the table is missing; unlike tuning
    values there is no sensible default roster.
    """
    if name not in _tables:
        with open(DATA_DIR / f"{name}.toml", "rb") as f:
            _tables[name] = tomllib.load(f)
    return _tables[name]


def _count_leaves(d: dict, _n: int = 0) -> int:
    for v in d.values():
        if isinstance(v, dict):
            _n = _count_leaves(v, _n)
        else:
            _n += 1
    return _n
