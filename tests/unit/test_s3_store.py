from __future__ import annotations

from datetime import datetime, UTC

import pytest
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet

from directory.models import DeviceTokenRecord
from exchange.models import KeyExchangeRequest, RequestStatus
from state.models import Snapshot
from state.s3_store import OptimisticLockError, S3SnapshotStore


KEY = Fernet.generate_key()


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class FakeS3:
    def __init__(self) -> None:
        self._store = {}  # (bucket, key) -> {Body: bytes, ETag: str}
        self._counter = 0

    def _etag(self) -> str:
        self._counter += 1
        return f'"fake-{self._counter}"'

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str):
        etag = self._etag()
        self._store[(Bucket, Key)] = {"Body": Body, "ETag": etag}
        return {"ETag": etag}

    def get_object(self, *, Bucket: str, Key: str):
        item = self._store.get((Bucket, Key))
        if not item:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": _FakeBody(item["Body"]), "ETag": item["ETag"]}

    def copy_object(self, *, Bucket: str, Key: str, CopySource, IfMatch=None, MetadataDirective=None):
        dest = self._store.get((Bucket, Key))
        if IfMatch is not None and (not dest or dest["ETag"] != IfMatch):
            raise ClientError({"Error": {"Code": "PreconditionFailed"}}, "CopyObject")
        src = self._store.get((CopySource["Bucket"], CopySource["Key"]))
        if not src:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "CopyObject")
        etag = self._etag()
        self._store[(Bucket, Key)] = {"Body": src["Body"], "ETag": etag}
        return {"ETag": etag}

    def delete_object(self, *, Bucket: str, Key: str):
        self._store.pop((Bucket, Key), None)
        return {}

    def keys(self):
        return sorted(k for _, k in self._store)


def _snapshot() -> Snapshot:
    req = KeyExchangeRequest(
        request_id="req1",
        sender_id="S-alice",
        recipient_id="S-bob",
        public_key="pk1",
        encrypted_user_data="edata1",
        status=RequestStatus.ACCEPTED,
        created_at=datetime(2025, 9, 1, 12, 0, tzinfo=UTC),
        responded_at=datetime(2025, 9, 1, 12, 1, tzinfo=UTC),
        last_delivery="undeliverable",
    )
    tok = DeviceTokenRecord(token="tok-1", platform="ios", session_id="S-alice")
    return Snapshot(requests=[req], tokens=[tok])


def test_read_missing_returns_empty_snapshot():
    store = S3SnapshotStore(s3=FakeS3(), bucket="b", key="k", fernet_key=KEY)

    snapshot, etag = store.read()
    assert etag is None
    assert snapshot == Snapshot.empty()


def test_write_and_read_roundtrip_is_encrypted():
    s3 = FakeS3()
    store = S3SnapshotStore(s3=s3, bucket="b", key="k", fernet_key=KEY)

    src = _snapshot()
    etag = store.write(src)
    raw = s3.get_object(Bucket="b", Key="k")["Body"].read()
    assert b"S-alice" not in raw

    dst, read_etag = store.read()
    assert read_etag == etag
    assert dst == src
    assert dst.requests[0].created_at.tzinfo is not None


def test_read_raises_value_error_on_bad_token():
    s3 = FakeS3()
    s3.put_object(Bucket="b", Key="k", Body=b"garbage", ContentType="application/octet-stream")

    store = S3SnapshotStore(s3=s3, bucket="b", key="k", fernet_key=KEY)
    with pytest.raises(ValueError):
        store.read()


def test_read_raises_value_error_on_wrong_schema():
    s3 = FakeS3()
    s3.put_object(
        Bucket="b", Key="k", Body=Fernet(KEY).encrypt(b'{"requests": 5}'), ContentType="application/octet-stream"
    )
    store = S3SnapshotStore(s3=s3, bucket="b", key="k", fernet_key=KEY)
    with pytest.raises(ValueError):
        store.read()


def test_conditional_write_succeeds_and_cleans_temp():
    s3 = FakeS3()
    store = S3SnapshotStore(s3=s3, bucket="b", key="k", fernet_key=KEY)
    etag1 = store.write(Snapshot.empty())

    etag2 = store.write(_snapshot(), if_match=etag1)
    assert etag2 != etag1
    assert s3.keys() == ["k"]

    roundtrip, read_etag = store.read()
    assert read_etag == etag2
    assert roundtrip == _snapshot()


def test_conditional_write_conflict():
    s3 = FakeS3()
    store1 = S3SnapshotStore(s3=s3, bucket="b", key="k", fernet_key=KEY)
    store2 = S3SnapshotStore(s3=s3, bucket="b", key="k", fernet_key=KEY)

    etag1 = store1.write(Snapshot.empty())
    store1.write(_snapshot(), if_match=etag1)

    with pytest.raises(OptimisticLockError):
        store2.write(Snapshot.empty(), if_match=etag1)
    assert s3.keys() == ["k"]
