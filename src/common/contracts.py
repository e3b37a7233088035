from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol


class EventKind(str, Enum):
    KEY_EXCHANGE_REQUEST = "key_exchange_request"
    KEY_EXCHANGE_ACCEPTED = "key_exchange_accepted"
    KEY_EXCHANGE_REJECTED = "key_exchange_rejected"
    KEY_EXCHANGE_REVOKED = "key_exchange_revoked"


# Provider rejection reasons that mean the token itself is dead
INVALID_TOKEN_REASONS = frozenset({"invalid_token", "expired_token"})


@dataclass(frozen=True)
class PushResult:
    """Outcome of handing a single token to the push provider."""

    accepted: bool
    reason: Optional[str] = None

    @property
    def token_invalid(self) -> bool:
        return not self.accepted and self.reason in INVALID_TOKEN_REASONS


class Transport(Protocol):
    """Live-connection layer. Owns the connection handles."""

    def send(self, handle: Any, event_kind: EventKind, payload: Dict[str, Any]) -> bool:
        ...


class PushProvider(Protocol):
    """External notification relay addressed per device token."""

    def push(
        self,
        token: str,
        platform: str,
        channel: str,
        event_kind: EventKind,
        payload: Dict[str, Any],
    ) -> PushResult:
        ...


__all__ = [
    "EventKind",
    "INVALID_TOKEN_REASONS",
    "PushResult",
    "Transport",
    "PushProvider",
]
