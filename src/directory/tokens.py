from __future__ import annotations

import logging
import threading
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from common.errors import UnknownToken
from common.locks import StripedLock

from .models import Channel, DeviceTokenRecord, Platform


log = logging.getLogger("keyrelay.tokens")


class TokenDirectory:
    """
    Maps session ids to the device tokens linked to them.

    - `register` is an idempotent upsert keyed by token and never links.
    - `link` moves a token between sessions; other tokens of the target
      session are kept (one session may own several devices).
    - Mutations of a token hold that token's stripe lock; the session index
      has its own small lock so reads never see a token under two sessions.
    """

    def __init__(self, *, stripes: int = 64) -> None:
        self._records: Dict[str, DeviceTokenRecord] = {}
        self._by_session: Dict[str, Set[str]] = {}
        self._token_locks = StripedLock(stripes)
        self._index_lock = threading.Lock()

    # -------- Core operations --------
    def register(self, token: str, platform: Platform | str, channel: Channel | str = Channel.DEFAULT) -> None:
        if not token:
            raise ValueError("token is required")
        platform = Platform(platform)
        channel = Channel(channel)
        with self._token_locks.for_key(token):
            current = self._records.get(token)
            session_id = current.session_id if current else None
            record = DeviceTokenRecord(token=token, platform=platform, channel=channel, session_id=session_id)
            if current == record:
                return
            self._records[token] = record
        log.info("registered %s token %s… (channel=%s)", record.platform, token[:8], record.channel)

    def link(self, token: str, session_id: str) -> None:
        if not session_id:
            raise ValueError("session_id is required")
        with self._token_locks.for_key(token):
            current = self._records.get(token)
            if current is None:
                raise UnknownToken(f"token was never registered: {token[:8]}…")
            previous = current.session_id
            if previous == session_id:
                return
            self._records[token] = current.model_copy(update={"session_id": session_id})
            with self._index_lock:
                if previous is not None:
                    self._discard_from_index(previous, token)
                self._by_session.setdefault(session_id, set()).add(token)
        if previous is not None:
            log.info("moved token %s… from %s to %s", token[:8], previous, session_id)
        else:
            log.info("linked token %s… to %s", token[:8], session_id)

    def unlink(self, token: str, session_id: Optional[str] = None) -> bool:
        """Drop the token's session link. With `session_id`, only if it matches.

        Returns True when a link was removed.
        """
        with self._token_locks.for_key(token):
            current = self._records.get(token)
            if current is None:
                raise UnknownToken(f"token was never registered: {token[:8]}…")
            if current.session_id is None:
                return False
            if session_id is not None and current.session_id != session_id:
                return False
            self._records[token] = current.model_copy(update={"session_id": None})
            with self._index_lock:
                self._discard_from_index(current.session_id, token)
        return True

    def unregister(self, token: str) -> bool:
        """Delete the token record entirely. Returns False if it was unknown."""
        with self._token_locks.for_key(token):
            current = self._records.pop(token, None)
            if current is None:
                return False
            if current.session_id is not None:
                with self._index_lock:
                    self._discard_from_index(current.session_id, token)
        log.info("unregistered token %s…", token[:8])
        return True

    def tokens_for(self, session_id: str) -> FrozenSet[DeviceTokenRecord]:
        with self._index_lock:
            tokens = list(self._by_session.get(session_id, ()))
        out: Set[DeviceTokenRecord] = set()
        for token in tokens:
            record = self._records.get(token)
            # the token may have moved since the index read
            if record is not None and record.session_id == session_id:
                out.add(record)
        return frozenset(out)

    def get(self, token: str) -> Optional[DeviceTokenRecord]:
        return self._records.get(token)

    def __len__(self) -> int:
        return len(self._records)

    # -------- Persistence helpers --------
    def snapshot(self) -> List[DeviceTokenRecord]:
        return sorted(self._records.values(), key=lambda r: r.token)

    def restore(self, records: Iterable[DeviceTokenRecord]) -> None:
        """Replace the directory contents with `records`."""
        with self._index_lock:
            self._records = {}
            self._by_session = {}
            for record in records:
                self._records[record.token] = record
                if record.session_id is not None:
                    self._by_session.setdefault(record.session_id, set()).add(record.token)

    def _discard_from_index(self, session_id: str, token: str) -> None:
        tokens = self._by_session.get(session_id)
        if tokens is None:
            return
        tokens.discard(token)
        if not tokens:
            del self._by_session[session_id]
