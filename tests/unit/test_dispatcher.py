from __future__ import annotations

from typing import Any, Dict, List, Optional

from common.contracts import EventKind, PushResult
from directory.sessions import SessionDirectory
from directory.tokens import TokenDirectory
from dispatch.dispatcher import DeliveryStatus, NotificationDispatcher, Route, aggregate, TokenResult


class FakeTransport:
    def __init__(self, *, ok: bool = True, raise_exc: bool = False) -> None:
        self.ok = ok
        self.raise_exc = raise_exc
        self.sent: List[Any] = []

    def send(self, handle, event_kind, payload):
        self.sent.append((handle, event_kind, payload))
        if self.raise_exc:
            raise ConnectionResetError("socket closed")
        return self.ok


class FakeProvider:
    def __init__(self, plan: Optional[Dict[str, PushResult]] = None) -> None:
        self.plan = plan or {}
        self.calls: List[Dict[str, Any]] = []

    def push(self, token, platform, channel, event_kind, payload):
        self.calls.append(
            {"token": token, "platform": platform, "channel": channel, "kind": event_kind, "payload": payload}
        )
        result = self.plan.get(token, PushResult(accepted=True))
        if isinstance(result, Exception):
            raise result
        return result


class SpyTokens(TokenDirectory):
    def __init__(self) -> None:
        super().__init__()
        self.lookups = 0

    def tokens_for(self, session_id):
        self.lookups += 1
        return super().tokens_for(session_id)


def _setup(transport=None, provider=None):
    sessions = SessionDirectory()
    tokens = SpyTokens()
    dispatcher = NotificationDispatcher(sessions, tokens, transport=transport, provider=provider)
    return dispatcher, sessions, tokens


def _link(tokens: TokenDirectory, token: str, session: str, platform: str = "ios") -> None:
    tokens.register(token, platform)
    tokens.link(token, session)


def test_online_session_uses_direct_send_only():
    transport = FakeTransport()
    provider = FakeProvider()
    dispatcher, sessions, tokens = _setup(transport, provider)
    sessions.mark_online("S-bob", "h-bob")
    _link(tokens, "tok-1", "S-bob")
    tokens.lookups = 0

    outcome = dispatcher.deliver("S-bob", "key_exchange_request", {"requestId": "r1"})

    assert outcome.status is DeliveryStatus.DELIVERED
    assert outcome.route is Route.DIRECT
    assert transport.sent == [("h-bob", EventKind.KEY_EXCHANGE_REQUEST, {"requestId": "r1"})]
    assert tokens.lookups == 0
    assert provider.calls == []


def test_offline_without_tokens_is_undeliverable():
    dispatcher, _, tokens = _setup(FakeTransport(), FakeProvider())

    outcome = dispatcher.deliver("S-bob", EventKind.KEY_EXCHANGE_REQUEST, {})
    assert outcome.status is DeliveryStatus.UNDELIVERABLE
    assert tokens.lookups == 1


def test_stale_handle_falls_back_to_push_and_clears_presence():
    transport = FakeTransport(ok=False)
    provider = FakeProvider()
    dispatcher, sessions, tokens = _setup(transport, provider)
    sessions.mark_online("S-bob", "h-stale")
    _link(tokens, "tok-1", "S-bob")

    outcome = dispatcher.deliver("S-bob", EventKind.KEY_EXCHANGE_ACCEPTED, {"requestId": "r1"})

    assert outcome.route is Route.PUSH
    assert outcome.status is DeliveryStatus.DELIVERED
    assert len(transport.sent) == 1
    assert [c["token"] for c in provider.calls] == ["tok-1"]
    assert sessions.is_online("S-bob") is False


def test_transport_exception_falls_back_to_push():
    dispatcher, sessions, tokens = _setup(FakeTransport(raise_exc=True), FakeProvider())
    sessions.mark_online("S-bob", "h")
    _link(tokens, "tok-1", "S-bob")

    outcome = dispatcher.deliver("S-bob", EventKind.KEY_EXCHANGE_REQUEST, {})
    assert outcome.route is Route.PUSH
    assert outcome.status is DeliveryStatus.DELIVERED


def test_mixed_results_are_partial_failure():
    provider = FakeProvider({"tok-b": PushResult(accepted=False, reason="http_500")})
    dispatcher, _, tokens = _setup(provider=provider)
    _link(tokens, "tok-a", "S-bob")
    _link(tokens, "tok-b", "S-bob", platform="android")

    outcome = dispatcher.deliver("S-bob", EventKind.KEY_EXCHANGE_REQUEST, {"requestId": "r1"})

    assert outcome.status is DeliveryStatus.PARTIAL_FAILURE
    assert outcome.delivered is True
    assert [(r.token, r.accepted) for r in outcome.results] == [("tok-a", True), ("tok-b", False)]
    assert {c["platform"] for c in provider.calls} == {"ios", "android"}


def test_all_failed_including_provider_exceptions():
    provider = FakeProvider(
        {
            "tok-a": PushResult(accepted=False, reason="http_503"),
            "tok-b": TimeoutError("relay timed out"),  # type: ignore[dict-item]
        }
    )
    dispatcher, _, tokens = _setup(provider=provider)
    _link(tokens, "tok-a", "S-bob")
    _link(tokens, "tok-b", "S-bob")

    outcome = dispatcher.deliver("S-bob", EventKind.KEY_EXCHANGE_REJECTED, {})
    assert outcome.status is DeliveryStatus.FAILED
    assert outcome.delivered is False
    assert outcome.results[1].reason == "provider_error"


def test_invalid_tokens_are_pruned():
    provider = FakeProvider({"tok-dead": PushResult(accepted=False, reason="invalid_token")})
    dispatcher, _, tokens = _setup(provider=provider)
    _link(tokens, "tok-dead", "S-bob")
    _link(tokens, "tok-live", "S-bob")

    outcome = dispatcher.deliver("S-bob", EventKind.KEY_EXCHANGE_REQUEST, {})

    assert outcome.pruned == ("tok-dead",)
    assert tokens.get("tok-dead") is None
    assert {r.token for r in tokens.tokens_for("S-bob")} == {"tok-live"}


def test_pruning_can_be_disabled():
    sessions, tokens = SessionDirectory(), TokenDirectory()
    provider = FakeProvider({"tok-dead": PushResult(accepted=False, reason="expired_token")})
    dispatcher = NotificationDispatcher(sessions, tokens, provider=provider, prune_invalid_tokens=False)
    _link(tokens, "tok-dead", "S-bob")

    outcome = dispatcher.deliver("S-bob", EventKind.KEY_EXCHANGE_REQUEST, {})
    assert outcome.status is DeliveryStatus.FAILED
    assert outcome.pruned == ()
    assert tokens.get("tok-dead") is not None


def test_missing_provider_reports_failed():
    dispatcher, _, tokens = _setup()
    _link(tokens, "tok-1", "S-bob")

    outcome = dispatcher.deliver("S-bob", EventKind.KEY_EXCHANGE_REQUEST, {})
    assert outcome.status is DeliveryStatus.FAILED
    assert outcome.results[0].reason == "provider_unconfigured"


def test_aggregate():
    assert aggregate([]) is DeliveryStatus.UNDELIVERABLE
    assert aggregate([TokenResult("a", True)]) is DeliveryStatus.DELIVERED
    assert aggregate([TokenResult("a", False)]) is DeliveryStatus.FAILED
    assert aggregate([TokenResult("a", True), TokenResult("b", False)]) is DeliveryStatus.PARTIAL_FAILURE
