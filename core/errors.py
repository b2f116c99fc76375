"""core/errors.py — Exception taxonomy for the simulation.

NotFound conditions (no path, no rails, missing session) are never
exceptions; they come back as ``None`` or an empty result.
"""

from __future__ import annotations


class SimError(Exception):
    """Base class for every error raised by this package."""


class InvalidInput(SimError, ValueError):
    """Bad coordinates, out-of-bounds or non-traversable endpoints.

    Fails fast and is never retried.
    """


class InvalidGrid(InvalidInput):
    """A grid that is not rectangular or has a broken entrance."""


class Contention(SimError):
    """Another worker holds the session lock or won the CAS race."""


class StoreError(SimError):
    """Transient persistence failure.  The driver retries with backoff."""


class InnClosed(SimError):
    """A purchase arrived while the inn is on break or closing a period."""

    def __init__(self, session_id: str, work_state: str | None) -> None:
        super().__init__(f"inn {session_id} is {work_state or 'not open'}")
        self.session_id = session_id
        self.work_state = work_state
