from __future__ import annotations

import logging
from datetime import datetime, timedelta, UTC
from typing import Any, Callable, Dict, Iterable, List, Optional, Type
from uuid import uuid4

from common.contracts import EventKind
from common.errors import (
    DuplicatePending,
    InvalidParticipants,
    InvalidState,
    KeyRelayError,
    NotFound,
    NotRecipient,
    NotSender,
    RequestIdConflict,
)
from common.locks import StripedLock
from dispatch.dispatcher import DeliveryOutcome, NotificationDispatcher

from .models import KeyExchangeRequest, RequestStatus, pair_key


log = logging.getLogger("keyrelay.registry")

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_RETENTION_SECONDS = 86400.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


def new_request_id() -> str:
    return f"ker_{uuid4().hex}"


class KeyExchangeRegistry:
    """
    In-flight key-exchange requests and their request/accept/reject lifecycle.

    Locking
    - Each request's lifecycle fields change only under its stripe lock, as a
      single read-check-write. Of two racing responders the first to see
      `pending` wins; the other gets `InvalidState`.
    - The pending-pair index ("at most one pending request per unordered
      pair") has its own stripe pool. A record lock is never held while a pair
      lock is taken, and neither is held while dispatching.

    Delivery happens after the transition has committed, on owned copies of
    the payload. Its outcome is recorded on the request (`last_delivery`) and
    never changes the handshake state.
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = new_request_id,
        stripes: int = 64,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._dispatcher = dispatcher
        self._ttl = timedelta(seconds=ttl_seconds)
        self._retention = timedelta(seconds=retention_seconds)
        self._clock = clock
        self._id_factory = id_factory
        self._records: Dict[str, KeyExchangeRequest] = {}
        self._pending_pairs: Dict[str, str] = {}
        self._record_locks = StripedLock(stripes)
        self._pair_locks = StripedLock(stripes)

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    # -------- Lifecycle --------
    def initiate(
        self,
        sender_id: str,
        recipient_id: str,
        public_key: str,
        encrypted_user_data: str,
        *,
        request_id: Optional[str] = None,
    ) -> str:
        if sender_id == recipient_id:
            raise InvalidParticipants("sender and recipient must differ")
        record = KeyExchangeRequest(
            request_id=request_id or self._id_factory(),
            sender_id=sender_id,
            recipient_id=recipient_id,
            public_key=public_key,
            encrypted_user_data=encrypted_user_data,
            created_at=self._clock(),
            in_flight=1,
        )
        rid = record.request_id
        key = record.pair_key()
        with self._pair_locks.for_key(key):
            existing = self._pending_pairs.get(key)
            if existing is not None:
                other = self._records.get(existing)
                if other is not None and other.status is RequestStatus.PENDING:
                    raise DuplicatePending(f"request {existing} is already pending for this pair")
            if self._records.setdefault(rid, record) is not record:
                raise RequestIdConflict(f"request id already in use: {rid}")
            self._pending_pairs[key] = rid
        log.info("key exchange %s initiated: %s -> %s", rid, sender_id, recipient_id)

        self._dispatch(
            rid,
            recipient_id,
            EventKind.KEY_EXCHANGE_REQUEST,
            {
                "requestId": rid,
                "senderId": sender_id,
                "recipientId": recipient_id,
                "publicKey": public_key,
                "encryptedUserData": encrypted_user_data,
            },
        )
        return rid

    def accept(self, request_id: str, recipient_id: str, encrypted_user_data: str) -> None:
        record = self._transition(
            request_id,
            actor_id=recipient_id,
            actor_field="recipient_id",
            actor_error=NotRecipient,
            new_status=RequestStatus.ACCEPTED,
            updates={"encrypted_user_data": encrypted_user_data},
        )
        self._dispatch(
            request_id,
            record.sender_id,
            EventKind.KEY_EXCHANGE_ACCEPTED,
            {
                "requestId": request_id,
                "recipientId": recipient_id,
                "encryptedUserData": encrypted_user_data,
            },
        )

    def reject(self, request_id: str, recipient_id: str) -> None:
        record = self._transition(
            request_id,
            actor_id=recipient_id,
            actor_field="recipient_id",
            actor_error=NotRecipient,
            new_status=RequestStatus.REJECTED,
        )
        self._dispatch(
            request_id,
            record.sender_id,
            EventKind.KEY_EXCHANGE_REJECTED,
            {"requestId": request_id, "recipientId": recipient_id},
        )

    def revoke(self, request_id: str, sender_id: str) -> None:
        """Sender withdraws a request that is still pending."""
        record = self._transition(
            request_id,
            actor_id=sender_id,
            actor_field="sender_id",
            actor_error=NotSender,
            new_status=RequestStatus.REVOKED,
        )
        self._dispatch(
            request_id,
            record.recipient_id,
            EventKind.KEY_EXCHANGE_REVOKED,
            {"requestId": request_id, "senderId": sender_id},
        )

    def expire(self, now: Optional[datetime] = None) -> List[str]:
        """Move pending requests older than the TTL to `expired`. Silent, idempotent."""
        now = now or self._clock()
        expired: List[str] = []
        for rid in list(self._records):
            with self._record_locks.for_key(rid):
                record = self._records.get(rid)
                if record is None or record.status is not RequestStatus.PENDING:
                    continue
                if now - record.created_at <= self._ttl:
                    continue
                record.status = RequestStatus.EXPIRED
                record.responded_at = now
                key = record.pair_key()
            self._release_pair(key, rid)
            expired.append(rid)
        if expired:
            log.info("expired %d pending key exchange(s)", len(expired))
        return expired

    def purge(self, now: Optional[datetime] = None) -> List[str]:
        """Drop terminal requests past the retention window with no dispatch in flight."""
        now = now or self._clock()
        purged: List[str] = []
        for rid in list(self._records):
            with self._record_locks.for_key(rid):
                record = self._records.get(rid)
                if record is None or not record.status.terminal or record.in_flight > 0:
                    continue
                finished = record.responded_at or record.created_at
                if now - finished <= self._retention:
                    continue
                del self._records[rid]
            purged.append(rid)
        if purged:
            log.info("purged %d finished key exchange(s)", len(purged))
        return purged

    # -------- Queries --------
    def get(self, request_id: str) -> Optional[KeyExchangeRequest]:
        with self._record_locks.for_key(request_id):
            record = self._records.get(request_id)
            return record.model_copy() if record is not None else None

    def pending_for(self, session_id: str) -> List[KeyExchangeRequest]:
        """Pending requests addressed to `session_id`, oldest first."""
        out: List[KeyExchangeRequest] = []
        for rid in list(self._records):
            record = self.get(rid)
            if record is not None and record.recipient_id == session_id and record.status is RequestStatus.PENDING:
                out.append(record)
        return sorted(out, key=lambda r: r.created_at)

    def replay_pending(self, session_id: str) -> int:
        """Re-deliver pending requests addressed to `session_id`.

        Hook for reconnect reconciliation. Returns the number re-sent.
        """
        replayed = 0
        for record in self.pending_for(session_id):
            with self._record_locks.for_key(record.request_id):
                live = self._records.get(record.request_id)
                if live is None or live.status is not RequestStatus.PENDING:
                    continue
                live.in_flight += 1
            self._dispatch(
                record.request_id,
                session_id,
                EventKind.KEY_EXCHANGE_REQUEST,
                {
                    "requestId": record.request_id,
                    "senderId": record.sender_id,
                    "recipientId": record.recipient_id,
                    "publicKey": record.public_key,
                    "encryptedUserData": record.encrypted_user_data,
                },
            )
            replayed += 1
        if replayed:
            log.info("replayed %d pending key exchange(s) to %s", replayed, session_id)
        return replayed

    def __len__(self) -> int:
        return len(self._records)

    # -------- Persistence helpers --------
    def snapshot(self) -> List[KeyExchangeRequest]:
        records = [r for r in (self.get(rid) for rid in list(self._records)) if r is not None]
        for r in records:
            r.in_flight = 0
        return sorted(records, key=lambda r: (r.created_at, r.request_id))

    def restore(self, requests: Iterable[KeyExchangeRequest]) -> None:
        """Replace all records. Intended for startup, before traffic flows."""
        records: Dict[str, KeyExchangeRequest] = {}
        pairs: Dict[str, str] = {}
        for request in requests:
            record = request.model_copy(update={"in_flight": 0})
            records[record.request_id] = record
            if record.status is RequestStatus.PENDING:
                pairs[record.pair_key()] = record.request_id
        self._records = records
        self._pending_pairs = pairs

    def reconcile(self, stored: Iterable[KeyExchangeRequest]) -> List[str]:
        """Adopt terminal outcomes another writer recorded for requests still pending here.

        Records that are unknown here, or already finished here, are left alone.
        Returns the ids whose status changed.
        """
        adopted: List[str] = []
        for other in stored:
            if not other.status.terminal:
                continue
            rid = other.request_id
            with self._record_locks.for_key(rid):
                record = self._records.get(rid)
                if record is None or record.status is not RequestStatus.PENDING:
                    continue
                record.status = other.status
                record.responded_at = other.responded_at or self._clock()
                key = record.pair_key()
            self._release_pair(key, rid)
            adopted.append(rid)
        if adopted:
            log.info("adopted %d stored outcome(s) during reconcile", len(adopted))
        return adopted

    # -------- Internal --------
    def _transition(
        self,
        request_id: str,
        *,
        actor_id: str,
        actor_field: str,
        actor_error: Type[KeyRelayError],
        new_status: RequestStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> KeyExchangeRequest:
        with self._record_locks.for_key(request_id):
            record = self._records.get(request_id)
            if record is None:
                raise NotFound(f"no such key exchange request: {request_id}")
            if getattr(record, actor_field) != actor_id:
                raise actor_error(f"{actor_id} is not the {actor_field.split('_')[0]} of {request_id}")
            if record.status is not RequestStatus.PENDING:
                raise InvalidState(f"request {request_id} is {record.status.value}")
            record.status = new_status
            record.responded_at = self._clock()
            for name, value in (updates or {}).items():
                setattr(record, name, value)
            record.in_flight += 1
            committed = record.model_copy()
        self._release_pair(committed.pair_key(), request_id)
        log.info("key exchange %s %s by %s", request_id, new_status.value, actor_id)
        return committed

    def _release_pair(self, key: str, request_id: str) -> None:
        with self._pair_locks.for_key(key):
            if self._pending_pairs.get(key) == request_id:
                del self._pending_pairs[key]

    def _dispatch(
        self, request_id: str, session_id: str, event_kind: EventKind, payload: Dict[str, Any]
    ) -> Optional[DeliveryOutcome]:
        outcome: Optional[DeliveryOutcome] = None
        try:
            outcome = self._dispatcher.deliver(session_id, event_kind, payload)
        except Exception:
            # delivery is best-effort; the transition above already stands
            log.exception("dispatch of %s for %s failed", event_kind.value, request_id)
        finally:
            with self._record_locks.for_key(request_id):
                record = self._records.get(request_id)
                if record is not None:
                    record.in_flight = max(0, record.in_flight - 1)
                    record.last_delivery = outcome.status.value if outcome is not None else "error"
        return outcome
