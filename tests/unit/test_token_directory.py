from __future__ import annotations

import pytest

from common.errors import UnknownToken
from directory.models import Channel, DeviceTokenRecord, Platform
from directory.tokens import TokenDirectory


def test_tokens_for_unknown_session_is_empty():
    tokens = TokenDirectory()
    assert tokens.tokens_for("S-nobody") == frozenset()


def test_register_is_idempotent_and_does_not_link():
    tokens = TokenDirectory()
    tokens.register("tok-1", "ios", "default")
    tokens.register("tok-1", "ios", "default")

    assert len(tokens) == 1
    rec = tokens.get("tok-1")
    assert rec == DeviceTokenRecord(token="tok-1", platform=Platform.IOS, channel=Channel.DEFAULT)
    assert rec.session_id is None


def test_register_upsert_keeps_existing_link():
    tokens = TokenDirectory()
    tokens.register("tok-1", "android")
    tokens.link("tok-1", "S-alice")

    tokens.register("tok-1", "android", "silent")
    rec = tokens.get("tok-1")
    assert rec.channel == "silent"
    assert rec.session_id == "S-alice"


def test_register_rejects_unknown_platform():
    tokens = TokenDirectory()
    with pytest.raises(ValueError):
        tokens.register("tok-1", "windows-phone")


def test_link_unknown_token_raises():
    tokens = TokenDirectory()
    with pytest.raises(UnknownToken):
        tokens.link("ghost", "S-alice")


def test_link_twice_same_session_is_noop():
    tokens = TokenDirectory()
    tokens.register("tok-1", "ios")
    tokens.link("tok-1", "S-alice")
    tokens.link("tok-1", "S-alice")

    assert {r.token for r in tokens.tokens_for("S-alice")} == {"tok-1"}


def test_relink_moves_token():
    tokens = TokenDirectory()
    tokens.register("tok-1", "ios")
    tokens.link("tok-1", "S1")
    tokens.link("tok-1", "S2")

    assert tokens.tokens_for("S1") == frozenset()
    assert [r.session_id for r in tokens.tokens_for("S2")] == ["S2"]


def test_session_keeps_multiple_devices():
    tokens = TokenDirectory()
    tokens.register("tok-phone", "ios")
    tokens.register("tok-tablet", "android")
    tokens.link("tok-phone", "S-alice")
    tokens.link("tok-tablet", "S-alice")

    assert {r.token for r in tokens.tokens_for("S-alice")} == {"tok-phone", "tok-tablet"}


def test_unlink_and_unregister():
    tokens = TokenDirectory()
    tokens.register("tok-1", "ios")
    tokens.link("tok-1", "S-alice")

    # mismatched session leaves the link alone
    assert tokens.unlink("tok-1", "S-bob") is False
    assert tokens.unlink("tok-1", "S-alice") is True
    assert tokens.tokens_for("S-alice") == frozenset()
    assert tokens.unlink("tok-1") is False

    assert tokens.unregister("tok-1") is True
    assert tokens.unregister("tok-1") is False
    with pytest.raises(UnknownToken):
        tokens.link("tok-1", "S-alice")


def test_snapshot_restore_roundtrip():
    tokens = TokenDirectory()
    tokens.register("b", "ios")
    tokens.register("a", "android", "silent")
    tokens.link("a", "S-alice")

    restored = TokenDirectory()
    restored.restore(tokens.snapshot())

    assert [r.token for r in restored.snapshot()] == ["a", "b"]
    assert {r.token for r in restored.tokens_for("S-alice")} == {"a"}
