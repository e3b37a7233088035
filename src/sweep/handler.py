from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from common import config
from directory.sessions import SessionDirectory
from directory.tokens import TokenDirectory
from dispatch.dispatcher import NotificationDispatcher
from exchange.registry import KeyExchangeRegistry
from exchange.sweeper import ExpirySweeper
from state.s3_store import OptimisticLockError, S3SnapshotStore


log = logging.getLogger("keyrelay.sweep")


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def run_once(*, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Expire stale handshakes and purge old finished ones in the stored snapshot.

    - Resolves settings from env, secrets from SSM under PARAM_PREFIX.
    - Reads the encrypted snapshot, sweeps its requests, writes it back with
      the ETag it was read under.
    - Storage failures are logged and reported, never raised: the next
      scheduled run simply tries again.

    Returns: {"ok": bool, "expired": N, "purged": M} or {"ok": False, "error": code}.
    """
    settings = config.Settings.from_env()
    logging.getLogger().setLevel(settings.log_level)

    bucket = _require(settings.state_bucket, config.ENV_STATE_BUCKET)
    fernet_key = _require(settings.fernet_key, "fernet_key")
    store = S3SnapshotStore(bucket=bucket, key=settings.state_key, fernet_key=fernet_key)

    try:
        snapshot, etag = store.read()
    except (ClientError, ValueError):
        log.exception("could not read snapshot; retrying next run")
        return {"ok": False, "error": "storage_unavailable"}

    # Expiry is silent, so the dispatcher here never has anything to route.
    dispatcher = NotificationDispatcher(SessionDirectory(), TokenDirectory())
    registry = KeyExchangeRegistry(
        dispatcher,
        ttl_seconds=settings.request_ttl_seconds,
        retention_seconds=settings.retention_seconds,
    )
    registry.restore(snapshot.requests)
    summary = ExpirySweeper(registry).sweep(now)
    if summary is None or (not summary.expired and not summary.purged):
        return {"ok": True, "expired": 0, "purged": 0}

    updated = snapshot.model_copy(update={"requests": registry.snapshot()})
    try:
        store.write(updated, if_match=etag)
    except OptimisticLockError:
        log.warning("snapshot changed during sweep; retrying next run")
        return {"ok": False, "error": "conflict"}
    except ClientError:
        log.exception("could not write snapshot; retrying next run")
        return {"ok": False, "error": "storage_unavailable"}

    return {"ok": True, "expired": len(summary.expired), "purged": len(summary.purged)}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entry for the scheduled expiry sweep.

    Environment:
    - STATE_BUCKET, STATE_KEY (default: keyrelay.json), PARAM_PREFIX
    - KEYRELAY_REQUEST_TTL_SECONDS, KEYRELAY_RETENTION_SECONDS, KEYRELAY_LOG_LEVEL
    - SSM under PARAM_PREFIX must provide: fernet_key
    """
    return run_once()
