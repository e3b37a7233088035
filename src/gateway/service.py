from __future__ import annotations

import logging
from typing import Optional

from common.airnotifier import AirNotifierClient
from common.config import Settings
from common.contracts import PushProvider, Transport
from directory.sessions import SessionDirectory
from directory.tokens import TokenDirectory
from dispatch.dispatcher import NotificationDispatcher
from exchange.registry import KeyExchangeRegistry
from exchange.sweeper import ExpirySweeper
from state.models import Snapshot
from state.s3_store import OptimisticLockError, S3SnapshotStore


log = logging.getLogger("keyrelay.service")


class Relay:
    """
    Wires the directories, dispatcher, registry and sweeper together.

    `start()` schedules the in-memory expiry sweep; entering the relay as a
    context manager does the same, and `close()` stops it.

    Persistence is optional: with a store, `load()` restores the last snapshot
    and `checkpoint()` writes the current one back under the ETag it was read
    with. If another writer (the scheduled sweep runner) got there first, the
    stored snapshot is re-read, its terminal outcomes are adopted for requests
    still pending here, and the write is retried. In-memory tokens win.
    """

    def __init__(
        self,
        *,
        transport: Optional[Transport] = None,
        provider: Optional[PushProvider] = None,
        store: Optional[S3SnapshotStore] = None,
        ttl_seconds: float = 300.0,
        retention_seconds: float = 86400.0,
        replay_on_connect: bool = False,
        sweep_interval_seconds: float = 60.0,
    ) -> None:
        self.sessions = SessionDirectory()
        self.tokens = TokenDirectory()
        self.dispatcher = NotificationDispatcher(
            self.sessions, self.tokens, transport=transport, provider=provider
        )
        self.registry = KeyExchangeRegistry(
            self.dispatcher, ttl_seconds=ttl_seconds, retention_seconds=retention_seconds
        )
        self.sweeper = ExpirySweeper(self.registry, interval_seconds=sweep_interval_seconds)
        self._provider = provider
        self._store = store
        self._etag: Optional[str] = None
        if replay_on_connect:
            self.sessions.add_online_listener(self.registry.replay_pending)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: Optional[Transport] = None,
        s3: Optional[object] = None,
    ) -> "Relay":
        provider: Optional[PushProvider] = None
        if settings.push_enabled:
            provider = AirNotifierClient(
                settings.push_base_url or "",
                app_name=settings.app_name,
                app_key=settings.app_key or "",
                timeout=settings.push_timeout,
                max_per_second=settings.push_max_per_second,
            )
        else:
            log.warning("push relay not configured; offline sessions cannot be woken")
        store: Optional[S3SnapshotStore] = None
        if settings.persistence_enabled:
            store = S3SnapshotStore(
                s3=s3,
                bucket=settings.state_bucket or "",
                key=settings.state_key,
                fernet_key=settings.fernet_key or "",
            )
        return cls(
            transport=transport,
            provider=provider,
            store=store,
            ttl_seconds=settings.request_ttl_seconds,
            retention_seconds=settings.retention_seconds,
            replay_on_connect=settings.replay_on_connect,
        )

    def snapshot(self) -> Snapshot:
        return Snapshot(requests=self.registry.snapshot(), tokens=self.tokens.snapshot())

    def restore(self, snapshot: Snapshot) -> None:
        self.registry.restore(snapshot.requests)
        self.tokens.restore(snapshot.tokens)

    def load(self) -> None:
        if self._store is None:
            return
        snapshot, self._etag = self._store.read()
        self.restore(snapshot)
        log.info("restored %d request(s) and %d token(s)", len(snapshot.requests), len(snapshot.tokens))

    def checkpoint(self, *, max_attempts: int = 3) -> Optional[str]:
        """Persist the current state. Returns the new ETag (None without a store).

        Raises OptimisticLockError only if every attempt lost the race.
        """
        if self._store is None:
            return None
        attempt = 0
        while True:
            attempt += 1
            try:
                self._etag = self._store.write(self.snapshot(), if_match=self._etag)
                return self._etag
            except OptimisticLockError:
                if attempt >= max_attempts:
                    raise
                log.warning("snapshot changed underneath us; re-reading (attempt %d)", attempt)
                stored, self._etag = self._store.read()
                self.registry.reconcile(stored.requests)

    def start(self) -> None:
        self.sweeper.start()

    def close(self) -> None:
        self.sweeper.stop()
        close = getattr(self._provider, "close", None)
        if callable(close):
            close()

    def __enter__(self) -> "Relay":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
