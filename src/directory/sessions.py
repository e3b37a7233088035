from __future__ import annotations

import logging
import threading
from datetime import datetime, UTC
from typing import Any, Callable, Dict, List, Optional

from common.locks import StripedLock

from .models import SessionPresence


log = logging.getLogger("keyrelay.sessions")

OnlineListener = Callable[[str], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SessionDirectory:
    """
    Which sessions hold a live connection, and through which handle.

    The handles belong to the transport layer; this directory only remembers
    the latest one per session. A newer `mark_online` supersedes the previous
    handle.
    """

    def __init__(self, *, stripes: int = 64, clock: Callable[[], datetime] = _utcnow) -> None:
        self._presence: Dict[str, SessionPresence] = {}
        self._locks = StripedLock(stripes)
        self._clock = clock
        self._listeners: List[OnlineListener] = []
        self._listeners_lock = threading.Lock()

    def add_online_listener(self, callback: OnlineListener) -> None:
        """Register `callback(session_id)` to run after each `mark_online`."""
        with self._listeners_lock:
            self._listeners.append(callback)

    def mark_online(self, session_id: str, connection_handle: Any) -> None:
        if not session_id:
            raise ValueError("session_id is required")
        if connection_handle is None:
            raise ValueError("connection_handle is required")
        with self._locks.for_key(session_id):
            previous = self._presence.get(session_id)
            self._presence[session_id] = SessionPresence(
                session_id=session_id,
                connection_handle=connection_handle,
                last_seen_at=self._clock(),
            )
        if previous is not None and previous.connection_handle is not connection_handle:
            log.info("session %s reconnected; previous handle superseded", session_id)
        else:
            log.info("session %s online", session_id)
        self._notify_online(session_id)

    def mark_offline(self, session_id: str, handle: Any = None) -> bool:
        """Clear the session's handle. Idempotent.

        With `handle`, clears only while that handle is still current, so a late
        disconnect of an old connection leaves a newer one alone. Returns True
        if something was cleared.
        """
        with self._locks.for_key(session_id):
            current = self._presence.get(session_id)
            if current is None:
                return False
            if handle is not None and current.connection_handle != handle:
                return False
            del self._presence[session_id]
        log.info("session %s offline", session_id)
        return True

    def is_online(self, session_id: str) -> bool:
        return session_id in self._presence

    def handle_for(self, session_id: str) -> Optional[Any]:
        presence = self._presence.get(session_id)
        return presence.connection_handle if presence is not None else None

    def presence(self, session_id: str) -> Optional[SessionPresence]:
        return self._presence.get(session_id)

    def _notify_online(self, session_id: str) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(session_id)
            except Exception:
                log.exception("online listener failed for session %s", session_id)
