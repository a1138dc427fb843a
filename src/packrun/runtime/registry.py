"""Session registry — run id → live Session."""

from __future__ import annotations

import logging

from packrun.run import Session, utc_now

logger = logging.getLogger(__name__)


class SessionRegistry:
    """In-memory run registry.

    Owned by the application (one per server instance).  The session map
    itself is only touched from code paths that do not await, so lookups and
    insertions are atomic on the event loop; anything that inspects a
    session's runners takes that session's lock first.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def get_or_create(self, run_id: str) -> Session:
        session = self._sessions.get(run_id)
        if session is None:
            session = Session(id=run_id, created_at=utc_now())
            self._sessions[run_id] = session
            logger.info("Run %s started", run_id)
        return session

    def get(self, run_id: str) -> Session | None:
        return self._sessions.get(run_id)

    async def remove_if_empty(self, run_id: str) -> bool:
        """Drop the session when no runners remain.  Returns True if removed."""
        session = self._sessions.get(run_id)
        if session is None:
            return False
        async with session.lock:
            if session.runners or session.closed:
                return False
            # A newer session may have replaced this one while we waited
            if self._sessions.get(run_id) is session:
                del self._sessions[run_id]
            session.closed = True
        logger.info("Run %s ended - no runners left", run_id)
        return True

    def list_all(self) -> list[Session]:
        return list(self._sessions.values())

    def clear(self) -> None:
        for session in self._sessions.values():
            session.closed = True
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._sessions
