from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import boto3
from botocore.exceptions import ClientError


# Environment variable names
ENV_PUSH_BASE_URL = "KEYRELAY_PUSH_BASE_URL"
ENV_APP_NAME = "KEYRELAY_APP_NAME"
ENV_REQUEST_TTL = "KEYRELAY_REQUEST_TTL_SECONDS"
ENV_RETENTION = "KEYRELAY_RETENTION_SECONDS"
ENV_PUSH_TIMEOUT = "KEYRELAY_PUSH_TIMEOUT"
ENV_PUSH_MAX_PER_SECOND = "KEYRELAY_PUSH_MAX_PER_SECOND"
ENV_REPLAY_ON_CONNECT = "KEYRELAY_REPLAY_ON_CONNECT"
ENV_LOG_LEVEL = "KEYRELAY_LOG_LEVEL"
ENV_STATE_BUCKET = "STATE_BUCKET"
ENV_STATE_KEY = "STATE_KEY"  # optional; defaults to "keyrelay.json"
ENV_PARAM_PREFIX = "PARAM_PREFIX"

DEFAULT_REQUEST_TTL_SECONDS = 300.0
DEFAULT_RETENTION_SECONDS = 86400.0
DEFAULT_STATE_KEY = "keyrelay.json"

# Parameter names looked up under PARAM_PREFIX in SSM
SSM_SECRET_NAMES = ("app_key", "fernet_key")


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _float_env(name: str, default: float) -> float:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as ex:
        raise RuntimeError(f"Invalid number for {name}: {raw!r}") from ex


def _bool_env(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            # Leave as None if parameter missing or access denied
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                out[name] = None
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


@dataclass(frozen=True)
class Settings:
    """
    Runtime configuration resolved from the environment and SSM.

    Secrets (`app_key`, `fernet_key`) are never read from plain env vars; they
    come from SSM Parameter Store under `PARAM_PREFIX`.
    """

    push_base_url: Optional[str] = None
    app_name: str = "keyrelay"
    app_key: Optional[str] = None
    request_ttl_seconds: float = DEFAULT_REQUEST_TTL_SECONDS
    retention_seconds: float = DEFAULT_RETENTION_SECONDS
    push_timeout: float = 15.0
    push_max_per_second: int = 25
    replay_on_connect: bool = False
    log_level: str = "INFO"
    state_bucket: Optional[str] = None
    state_key: str = DEFAULT_STATE_KEY
    fernet_key: Optional[str] = None

    @classmethod
    def from_env(cls, *, load_secrets: bool = True) -> "Settings":
        secrets: Dict[str, Optional[str]] = {k: None for k in SSM_SECRET_NAMES}
        prefix = _getenv(ENV_PARAM_PREFIX)
        if load_secrets:
            prefix = _require(prefix, ENV_PARAM_PREFIX)
            secrets = _load_ssm_params(prefix, SSM_SECRET_NAMES)

        return cls(
            push_base_url=_getenv(ENV_PUSH_BASE_URL),
            app_name=_getenv(ENV_APP_NAME, "keyrelay") or "keyrelay",
            app_key=secrets.get("app_key"),
            request_ttl_seconds=_float_env(ENV_REQUEST_TTL, DEFAULT_REQUEST_TTL_SECONDS),
            retention_seconds=_float_env(ENV_RETENTION, DEFAULT_RETENTION_SECONDS),
            push_timeout=_float_env(ENV_PUSH_TIMEOUT, 15.0),
            push_max_per_second=int(_float_env(ENV_PUSH_MAX_PER_SECOND, 25)),
            replay_on_connect=_bool_env(ENV_REPLAY_ON_CONNECT),
            log_level=(_getenv(ENV_LOG_LEVEL, "INFO") or "INFO").upper(),
            state_bucket=_getenv(ENV_STATE_BUCKET),
            state_key=_getenv(ENV_STATE_KEY, DEFAULT_STATE_KEY) or DEFAULT_STATE_KEY,
            fernet_key=secrets.get("fernet_key"),
        )

    @property
    def push_enabled(self) -> bool:
        return bool(self.push_base_url and self.app_key)

    @property
    def persistence_enabled(self) -> bool:
        return bool(self.state_bucket and self.fernet_key)


__all__ = ["Settings"]
