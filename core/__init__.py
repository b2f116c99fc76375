"""core package initialization.

Shared pieces for the mine and the inn: grid model, tuning, the
session document store, caches and the dev log.
"""

__all__ = ["constants", "grid", "store", "session", "tuning"]
