"""Registry of live MCP transport sessions.

A :class:`~fergus_mcp.auth.models.Session` optionally links to the
authentication session whose bearer id opened it. Several transport sessions
may share one authentication session (a client reconnecting, or running two
conversations with the same grant), so the reverse index maps each
authentication-session id to a *set* of transport session ids.

Both indices are only ever mutated together under one lock. Deleting a
session never touches the token store: a grant outlives its connections.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from fergus_mcp.auth.clock import Clock, default_clock
from fergus_mcp.auth.log_utils import short_id
from fergus_mcp.auth.models import Session

_LOG = logging.getLogger("fergus-mcp.auth.sessions")

# Idle transport sessions are evicted after the session timeout (7 days)
DEFAULT_IDLE_TIMEOUT_SECONDS = 7 * 24 * 60 * 60


class SessionRegistry:
    """Thread-safe id → Session map with an auth-session reverse index."""

    def __init__(
        self,
        *,
        timeout_seconds: int = DEFAULT_IDLE_TIMEOUT_SECONDS,
        clock: Clock = default_clock,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}
        self._by_auth: dict[str, set[str]] = {}

    # ----- creation / lookup ------------------------------------------------ #
    def create(
        self,
        session_id: str,
        transport: Any = None,
        api_client: Any = None,
        auth_session_id: str | None = None,
    ) -> Session:
        """Register a session, replacing any previous one with the same id."""
        now = self._clock()
        session = Session(
            session_id=session_id,
            transport=transport,
            api_client=api_client,
            created_at=now,
            last_accessed_at=now,
            auth_session_id=auth_session_id,
        )
        with self._lock:
            previous = self._sessions.get(session_id)
            if previous is not None:
                self._unlink(previous)
            self._sessions[session_id] = session
            if auth_session_id:
                self._by_auth.setdefault(auth_session_id, set()).add(session_id)
        _LOG.info(
            "Created session %s (auth %s)", session_id, short_id(auth_session_id)
        )
        return session

    def get(self, session_id: str) -> Session | None:
        """Return the session and mark it as accessed."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_accessed_at = self._clock()
        return session

    def get_by_auth_session(self, auth_session_id: str) -> list[Session]:
        """Return every live session linked to *auth_session_id*, touching each."""
        now = self._clock()
        with self._lock:
            ids = self._by_auth.get(auth_session_id, set())
            sessions = [self._sessions[sid] for sid in ids if sid in self._sessions]
            for session in sessions:
                session.last_accessed_at = now
        return sorted(sessions, key=lambda s: s.created_at)

    def has(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def touch(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_accessed_at = self._clock()

    # ----- mutation --------------------------------------------------------- #
    def delete(self, session_id: str) -> bool:
        """Remove a session; returns False when it did not exist."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            self._unlink(session)
        _LOG.info("Deleted session %s", session_id)
        return True

    def relink(self, old_auth_session_id: str, new_auth_session_id: str) -> int:
        """Move every session linked to the old auth id onto the new one."""
        with self._lock:
            ids = self._by_auth.pop(old_auth_session_id, set())
            moved = 0
            for sid in ids:
                session = self._sessions.get(sid)
                if session is None:
                    continue
                session.auth_session_id = new_auth_session_id
                self._by_auth.setdefault(new_auth_session_id, set()).add(sid)
                moved += 1
        if moved:
            _LOG.info(
                "Relinked %d session(s) from auth %s to %s",
                moved,
                short_id(old_auth_session_id),
                short_id(new_auth_session_id),
            )
        return moved

    def unlink_auth_session(self, auth_session_id: str) -> int:
        """Detach sessions from a revoked auth id without closing them."""
        with self._lock:
            ids = self._by_auth.pop(auth_session_id, set())
            for sid in ids:
                session = self._sessions.get(sid)
                if session is not None:
                    session.auth_session_id = None
        return len(ids)

    def _unlink(self, session: Session) -> None:
        # caller holds self._lock
        auth_id = session.auth_session_id
        if not auth_id:
            return
        linked = self._by_auth.get(auth_id)
        if linked is None:
            return
        linked.discard(session.session_id)
        if not linked:
            del self._by_auth[auth_id]

    # ----- housekeeping ----------------------------------------------------- #
    def all_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def cleanup_inactive(self) -> int:
        """Evict sessions idle for longer than the timeout."""
        now = self._clock()
        with self._lock:
            stale = [
                s
                for s in self._sessions.values()
                if now - s.last_accessed_at > self.timeout_seconds
            ]
            for session in stale:
                del self._sessions[session.session_id]
                self._unlink(session)
        for session in stale:
            _LOG.info(
                "Session %s inactive for %ds, cleaned up",
                session.session_id,
                int(now - session.last_accessed_at),
            )
        if stale:
            _LOG.info("Cleaned up %d inactive session(s)", len(stale))
        return len(stale)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            created = [s.created_at for s in self._sessions.values()]
        return {
            "total_sessions": len(created),
            "oldest_session": min(created) if created else None,
            "newest_session": max(created) if created else None,
            "average_age_seconds": (
                sum(now - c for c in created) / len(created) if created else 0.0
            ),
        }

    def clear_all(self) -> None:
        with self._lock:
            count = len(self._sessions)
            self._sessions.clear()
            self._by_auth.clear()
        _LOG.info("Cleared all %d session(s)", count)

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions
