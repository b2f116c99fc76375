"""core/constants.py — Shared constants used across the codebase.

Centralises magic numbers so there's exactly one place to change them.
Anything a designer is expected to tweak lives in ``data/tuning.toml``
instead; the values here are the built-in fallbacks passed to
``core.tuning.get`` and the fixed vocabulary of the simulation.

Unit System
-----------
    Distance / position     tiles   (grid cells, 0-indexed)
    Time                    s       (epoch seconds, float)
    Money                   coins   (integers, always floored)
    Iron                    units   (1 per rail tile)
"""

# ── Tile types ──────────────────────────────────────────────────────
TILE_FLOOR = "floor"
TILE_WALL = "wall"
TILE_ENTRANCE = "entrance"
TILE_WALL_ORE = "wall_ore"
TILE_RARE_ORE = "rare_ore"
TILE_TREASURE = "treasure"
TILE_HAZARD = "hazard"
TILE_REINFORCED = "reinforced"

# Only these can be walked on or railed.
TRAVERSABLE_TILES = frozenset({TILE_FLOOR, TILE_ENTRANCE})

# ASCII glyphs used by Grid.from_rows / Grid.to_rows
TILE_GLYPHS: dict[str, str] = {
    ".": TILE_FLOOR,
    "#": TILE_WALL,
    "E": TILE_ENTRANCE,
    "o": TILE_WALL_ORE,
    "*": TILE_RARE_ORE,
    "$": TILE_TREASURE,
    "^": TILE_HAZARD,
    "R": TILE_REINFORCED,
}

# Stable byte ids for snapshot files
TILE_IDS: dict[str, int] = {
    TILE_FLOOR: 0,
    TILE_WALL: 1,
    TILE_ENTRANCE: 2,
    TILE_WALL_ORE: 3,
    TILE_RARE_ORE: 4,
    TILE_TREASURE: 5,
    TILE_HAZARD: 6,
    TILE_REINFORCED: 7,
}

# ── Game modes ──────────────────────────────────────────────────────
MODE_INNKEEPER = "innkeeper"
MODE_MINING = "mining"

# ── Inn work states ─────────────────────────────────────────────────
STATE_WORKING = "working"
STATE_BREAK = "break"
STATE_TRANSITIONING = "transitioning_to_break"

# ── Inn timing fallbacks (seconds) ──────────────────────────────────
WORK_DURATION: float = 25 * 60
BREAK_DURATION: float = 5 * 60
ACTIVITY_GUARANTEE: float = 20.0
MESSAGE_COOLDOWN: float = 3.0
LOCK_TIMEOUT: float = 30.0
OVERDUE_THRESHOLD: float = 10 * 60
SHOP_REFRESH_INTERVAL: float = 25 * 60
RETRY_BASE_DELAY: float = 30.0
RETRY_MAX_DELAY: float = 300.0

# ── Rails ───────────────────────────────────────────────────────────
RAIL_IRON_PER_TILE: int = 1

# ── Establishment power ─────────────────────────────────────────────
MIN_POWER: int = 1
MAX_POWER: int = 7
