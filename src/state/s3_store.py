from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional, Tuple
from uuid import uuid4

import boto3
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet, InvalidToken

from .models import Snapshot


log = logging.getLogger("keyrelay.store")


class OptimisticLockError(Exception):
    """Raised when an ETag precondition fails during a conditional write."""


def _to_fernet(key: str | bytes) -> Fernet:
    """Build a Fernet from a urlsafe base64-encoded 32-byte key (str or bytes)."""
    key_bytes = key.encode("utf-8") if isinstance(key, str) else key
    return Fernet(key_bytes)


def _dump_snapshot_json(snapshot: Snapshot) -> bytes:
    # Deterministic JSON: stable key order, no extra whitespace
    return json.dumps(
        snapshot.model_dump(mode="json"), separators=(",", ":"), sort_keys=True
    ).encode("utf-8")


def _load_snapshot_json(data: bytes) -> Snapshot:
    return Snapshot.model_validate(json.loads(data.decode("utf-8")))


@dataclass
class S3ObjectRef:
    bucket: str
    key: str

    def __str__(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


class S3SnapshotStore:
    """
    S3-backed persistence for relay `Snapshot`s, encrypted at rest with Fernet.

    - `read()` returns `(snapshot, etag)`; a missing object reads as
      `(Snapshot.empty(), None)`.
    - `write(snapshot, if_match=None)` stores the ciphertext and returns the new
      ETag. With `if_match`, the write only lands if the stored object still has
      that ETag (upload to a temp key, then conditional copy), otherwise
      `OptimisticLockError` is raised.
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        key: str,
        fernet_key: str | bytes,
        region_name: Optional[str] = None,
    ) -> None:
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._obj = S3ObjectRef(bucket=bucket, key=key)
        self._fernet = _to_fernet(fernet_key)

    def read(self) -> Tuple[Snapshot, Optional[str]]:
        """Read and decrypt the snapshot.

        Raises:
        - ValueError if decryption fails or the content is not a valid snapshot.
        - botocore.exceptions.ClientError for other S3 issues.
        """
        try:
            resp = self._s3.get_object(Bucket=self._obj.bucket, Key=self._obj.key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                log.info("no snapshot at %s; starting empty", self._obj)
                return (Snapshot.empty(), None)
            raise

        body = resp["Body"].read()
        etag = resp.get("ETag")
        try:
            decrypted = self._fernet.decrypt(body)
        except InvalidToken as ex:
            raise ValueError("Failed to decrypt snapshot: invalid Fernet token") from ex

        try:
            snapshot = _load_snapshot_json(decrypted)
        except ValueError as ex:
            raise ValueError("Failed to parse decrypted snapshot JSON") from ex

        return (snapshot, etag)

    def write(self, snapshot: Snapshot, *, if_match: Optional[str] = None) -> str:
        ciphertext = self._fernet.encrypt(_dump_snapshot_json(snapshot))

        if if_match is None:
            resp = self._s3.put_object(
                Bucket=self._obj.bucket,
                Key=self._obj.key,
                Body=ciphertext,
                ContentType="application/octet-stream",
            )
            return str(resp.get("ETag"))

        # PutObject has no If-Match; emulate compare-and-swap with a temp
        # object and a conditional copy onto the destination.
        temp_key = f"{self._obj.key}.tmp-{uuid4().hex}"
        self._s3.put_object(
            Bucket=self._obj.bucket,
            Key=temp_key,
            Body=ciphertext,
            ContentType="application/octet-stream",
        )
        try:
            resp = self._s3.copy_object(
                Bucket=self._obj.bucket,
                Key=self._obj.key,
                CopySource={"Bucket": self._obj.bucket, "Key": temp_key},
                IfMatch=if_match,
                MetadataDirective="COPY",
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("PreconditionFailed", "412"):
                raise OptimisticLockError(f"ETag mismatch for {self._obj}") from e
            raise
        finally:
            try:
                self._s3.delete_object(Bucket=self._obj.bucket, Key=temp_key)
            except ClientError:
                log.warning("could not delete temp snapshot %s", temp_key)

        return str(resp.get("ETag"))
