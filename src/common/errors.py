from __future__ import annotations


class KeyRelayError(Exception):
    """Base error for handshake and token-directory validation failures.

    Each subclass carries a stable snake_case `code` that the gateway returns
    to clients.
    """

    code = "error"


class InvalidParticipants(KeyRelayError):
    """Sender and recipient are the same session."""

    code = "invalid_participants"


class DuplicatePending(KeyRelayError):
    """A pending request already exists for the unordered session pair."""

    code = "duplicate_pending"


class RequestIdConflict(KeyRelayError):
    """A client-suggested request id is already in use."""

    code = "request_id_conflict"


class NotFound(KeyRelayError):
    code = "not_found"


class NotRecipient(KeyRelayError):
    code = "not_recipient"


class NotSender(KeyRelayError):
    code = "not_sender"


class InvalidState(KeyRelayError):
    """The request is no longer pending."""

    code = "invalid_state"


class UnknownToken(KeyRelayError):
    """The device token was never registered."""

    code = "unknown_token"


__all__ = [
    "KeyRelayError",
    "InvalidParticipants",
    "DuplicatePending",
    "RequestIdConflict",
    "NotFound",
    "NotRecipient",
    "NotSender",
    "InvalidState",
    "UnknownToken",
]
