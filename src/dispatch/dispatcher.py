from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from common.contracts import EventKind, PushProvider, PushResult, Transport
from directory.sessions import SessionDirectory
from directory.tokens import TokenDirectory


log = logging.getLogger("keyrelay.dispatch")


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"
    UNDELIVERABLE = "undeliverable"


class Route(str, Enum):
    DIRECT = "direct"
    PUSH = "push"


@dataclass(frozen=True)
class TokenResult:
    token: str
    accepted: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class DeliveryOutcome:
    """
    Aggregated result of one `deliver` call.

    - route: which stage produced the outcome (None when nothing was tried).
    - results: per-token provider answers on the push route.
    - pruned: tokens removed from the directory after an invalid-token answer.
    """

    status: DeliveryStatus
    route: Optional[Route] = None
    results: Tuple[TokenResult, ...] = ()
    pruned: Tuple[str, ...] = ()

    @property
    def delivered(self) -> bool:
        return self.status in (DeliveryStatus.DELIVERED, DeliveryStatus.PARTIAL_FAILURE)


def aggregate(results: Sequence[TokenResult]) -> DeliveryStatus:
    if not results:
        return DeliveryStatus.UNDELIVERABLE
    ok = sum(1 for r in results if r.accepted)
    if ok == len(results):
        return DeliveryStatus.DELIVERED
    if ok == 0:
        return DeliveryStatus.FAILED
    return DeliveryStatus.PARTIAL_FAILURE


class DirectDelivery:
    """First stage: send over the session's live connection.

    Returns None (fall through) when the session is offline or the send fails.
    A failed send clears the stale handle, but only if it is still current.
    """

    def __init__(self, sessions: SessionDirectory, transport: Transport) -> None:
        self._sessions = sessions
        self._transport = transport

    def attempt(self, session_id: str, event_kind: EventKind, payload: Dict[str, Any]) -> Optional[DeliveryOutcome]:
        handle = self._sessions.handle_for(session_id)
        if handle is None:
            return None
        try:
            sent = bool(self._transport.send(handle, event_kind, payload))
        except Exception:
            log.warning("direct send to %s raised; falling back to push", session_id, exc_info=True)
            sent = False
        if sent:
            return DeliveryOutcome(status=DeliveryStatus.DELIVERED, route=Route.DIRECT)
        log.warning("direct send to %s failed; handle looks stale", session_id)
        self._sessions.mark_offline(session_id, handle=handle)
        return None


class PushDelivery:
    """Last stage: one provider call per linked token. Always returns an outcome."""

    def __init__(self, tokens: TokenDirectory, provider: Optional[PushProvider], *, prune_invalid: bool = True) -> None:
        self._tokens = tokens
        self._provider = provider
        self._prune_invalid = prune_invalid

    def attempt(self, session_id: str, event_kind: EventKind, payload: Dict[str, Any]) -> DeliveryOutcome:
        records = sorted(self._tokens.tokens_for(session_id), key=lambda r: r.token)
        if not records:
            log.info("no device tokens for %s; %s undeliverable", session_id, EventKind(event_kind).value)
            return DeliveryOutcome(status=DeliveryStatus.UNDELIVERABLE, route=Route.PUSH)
        if self._provider is None:
            log.warning("push provider not configured; cannot wake %s", session_id)
            results = [TokenResult(r.token, False, "provider_unconfigured") for r in records]
            return DeliveryOutcome(status=DeliveryStatus.FAILED, route=Route.PUSH, results=tuple(results))

        results: List[TokenResult] = []
        pruned: List[str] = []
        for record in records:
            try:
                answer = self._provider.push(
                    record.token, record.platform, record.channel, event_kind, dict(payload)
                )
            except Exception as exc:
                log.warning("push provider raised for token %s…: %s", record.token[:8], exc)
                answer = PushResult(accepted=False, reason="provider_error")
            results.append(TokenResult(record.token, answer.accepted, answer.reason))
            if answer.token_invalid and self._prune_invalid:
                if self._tokens.unregister(record.token):
                    pruned.append(record.token)
                    log.warning("pruned token %s… (%s)", record.token[:8], answer.reason)

        status = aggregate(results)
        return DeliveryOutcome(status=status, route=Route.PUSH, results=tuple(results), pruned=tuple(pruned))


class NotificationDispatcher:
    """
    Routes an event to a session: direct delivery first, then push.

    Owns no state. Never raises for transport or provider failures; callers get
    a `DeliveryOutcome` and decide what to do with it.
    """

    def __init__(
        self,
        sessions: SessionDirectory,
        tokens: TokenDirectory,
        *,
        transport: Optional[Transport] = None,
        provider: Optional[PushProvider] = None,
        prune_invalid_tokens: bool = True,
    ) -> None:
        self._direct = DirectDelivery(sessions, transport) if transport is not None else None
        self._push = PushDelivery(tokens, provider, prune_invalid=prune_invalid_tokens)

    def deliver(self, session_id: str, event_kind: EventKind | str, payload: Dict[str, Any]) -> DeliveryOutcome:
        kind = EventKind(event_kind)
        if self._direct is not None:
            outcome = self._direct.attempt(session_id, kind, payload)
            if outcome is not None:
                log.info("%s delivered directly to %s", kind.value, session_id)
                return outcome
        outcome = self._push.attempt(session_id, kind, payload)
        log.info("%s push to %s: %s", kind.value, session_id, outcome.status.value)
        return outcome
