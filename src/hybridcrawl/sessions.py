"""
Session loading.

Persistent credential storage lives outside the engine; fetchers only consume
``SessionStore.load_session``. ``InMemorySessionStore`` is the store used when
sessions are supplied programmatically.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional

import structlog

from hybridcrawl.errors import SessionError
from hybridcrawl.protocols import SessionData

logger = structlog.get_logger(__name__)


class InMemorySessionStore:
    """Thread-safe name -> ``SessionData`` mapping."""

    def __init__(self, sessions: Optional[List[SessionData]] = None) -> None:
        self._sessions: Dict[str, SessionData] = {}
        self._lock = threading.Lock()
        for session in sessions or []:
            self.save_session(session)

    def save_session(self, session: SessionData) -> None:
        if not session.name:
            raise SessionError("session name cannot be empty")
        with self._lock:
            self._sessions[session.name] = session

    def load_session(self, name: str) -> SessionData:
        """
        Raises:
            SessionError: unknown name, empty name, or an expired session.
        """
        if not name:
            raise SessionError("session name cannot be empty")
        with self._lock:
            session = self._sessions.get(name)
        if session is None:
            raise SessionError(f"session not found: {name}", details={"session": name})
        if session.is_expired():
            raise SessionError(f"session expired: {name}", details={"session": name})
        return session

    def delete_session(self, name: str) -> None:
        with self._lock:
            self._sessions.pop(name, None)

    def list_sessions(self) -> List[str]:
        with self._lock:
            return sorted(self._sessions)


def load_session_or_none(store: Optional[object], name: str) -> Optional[SessionData]:
    """Load ``name`` from ``store``; failures are logged and yield None so the fetch continues unauthenticated."""
    if not name or store is None:
        return None
    try:
        return store.load_session(name)  # type: ignore[attr-defined]
    except SessionError as e:
        logger.warning("Failed to load session", session=name, error=str(e))
        return None
