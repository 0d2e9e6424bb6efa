"""Per-session turn locks.

A turn holds its session's lock from credential resolution until the
conversation state written by the story expansion has been persisted. The
provider conversation id from turn N is input to turn N+1, so a second action
that arrives while a turn is in flight is rejected instead of queued.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class SessionLock:
    """Handle for one held session lock. ``release`` is safe to call twice."""

    def __init__(self, owner: SessionLocks, session_id: str) -> None:
        self._owner = owner
        self.session_id = session_id
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._owner._release(self)

    def __enter__(self) -> SessionLock:
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class SessionLocks:
    """Non-blocking keyed mutex. Runs on the event loop thread only."""

    def __init__(self) -> None:
        self._held: dict[str, SessionLock] = {}

    def try_acquire(self, session_id: str) -> SessionLock | None:
        """Return a lock handle, or None if a turn is already in flight."""
        if session_id in self._held:
            logger.debug("session %s: turn already in progress", session_id)
            return None
        lock = SessionLock(self, session_id)
        self._held[session_id] = lock
        return lock

    def locked(self, session_id: str) -> bool:
        return session_id in self._held

    def _release(self, lock: SessionLock) -> None:
        if self._held.get(lock.session_id) is lock:
            del self._held[lock.session_id]

    def __len__(self) -> int:
        return len(self._held)
