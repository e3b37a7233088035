from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from .contracts import EventKind, PushResult
from .rate_limiter import SlidingWindowRateLimiter


log = logging.getLogger("keyrelay.airnotifier")

PUSH_PATH = "/api/v2/push"

# Human-facing alert text per event; silent channel pushes carry none
_ALERTS: Dict[EventKind, Dict[str, str]] = {
    EventKind.KEY_EXCHANGE_REQUEST: {
        "title": "New key exchange request",
        "body": "Someone wants to start a secure chat with you",
    },
    EventKind.KEY_EXCHANGE_ACCEPTED: {
        "title": "Key exchange accepted",
        "body": "Your secure chat request was accepted",
    },
    EventKind.KEY_EXCHANGE_REJECTED: {
        "title": "Key exchange declined",
        "body": "Your secure chat request was declined",
    },
    EventKind.KEY_EXCHANGE_REVOKED: {
        "title": "Key exchange cancelled",
        "body": "A secure chat request was withdrawn",
    },
}

_SOUNDS: Dict[EventKind, str] = {
    EventKind.KEY_EXCHANGE_REQUEST: "invitation.wav",
    EventKind.KEY_EXCHANGE_ACCEPTED: "accept.wav",
    EventKind.KEY_EXCHANGE_REJECTED: "decline.wav",
}

_INVALID_TOKEN_MARKERS = ("invalid token", "invalid_token", "unknown token", "not registered", "unregistered")


class AirNotifierError(RuntimeError):
    """Base error for the AirNotifier client."""


class AirNotifierApiError(AirNotifierError):
    """Relay answered with an unexpected status or body."""


def build_push_body(
    token: str,
    platform: str,
    channel: str,
    event_kind: EventKind,
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    """Build the relay JSON body for a single device token.

    `data` always carries the event type plus the caller's payload so the app
    can finish the handshake from a background wake-up. On the `silent`
    channel the alert is dropped and `content-available` is set.
    """
    kind = EventKind(event_kind)
    data: Dict[str, Any] = {"type": kind.value}
    data.update(payload)
    body: Dict[str, Any] = {
        "token": token,
        "device": platform,
        "channel": channel,
        "data": data,
    }
    if channel == "silent":
        body["content-available"] = 1
    else:
        body["alert"] = dict(_ALERTS[kind])
        body["sound"] = _SOUNDS.get(kind, "default")
        body["badge"] = 1
    return body


def _rejection_reason(resp: httpx.Response) -> str:
    text = ""
    try:
        body = resp.json()
        if isinstance(body, dict):
            text = str(body.get("error") or body.get("message") or body.get("reason") or "")
    except ValueError:
        text = resp.text
    lowered = (text or resp.text or "").lower()
    if resp.status_code in (400, 404, 410) and any(m in lowered for m in _INVALID_TOKEN_MARKERS):
        return "expired_token" if resp.status_code == 410 else "invalid_token"
    return f"http_{resp.status_code}"


class AirNotifierClient:
    """
    Push provider backed by an AirNotifier relay (`POST /api/v2/push`).

    Notes
    - Authenticates with the `X-An-App-Name` / `X-An-App-Key` headers.
    - Retries transport errors, 429 and 5xx with exponential backoff, honoring
      `retry_after` in 429 bodies. Every attempt is bounded by `timeout`.
    - `push()` never raises for relay-side failures; it returns a rejected
      `PushResult` so the dispatcher can aggregate outcomes per token.
    """

    def __init__(
        self,
        base_url: str,
        *,
        app_name: str,
        app_key: str,
        timeout: float = 15.0,
        max_per_second: int = 25,
        max_attempts: int = 3,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        if not app_key:
            raise ValueError("app_key is required")
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={
                "Content-Type": "application/json",
                "X-An-App-Name": app_name,
                "X-An-App-Key": app_key,
            },
        )
        self._max_attempts = max(1, max_attempts)
        self._sleep = sleep
        self._limiter = SlidingWindowRateLimiter(max_calls=max_per_second, per_seconds=1.0, sleep=sleep)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "AirNotifierClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def push(
        self,
        token: str,
        platform: str,
        channel: str,
        event_kind: EventKind,
        payload: Dict[str, Any],
    ) -> PushResult:
        body = build_push_body(token, platform, channel, event_kind, payload)
        try:
            resp = self._request(body)
        except AirNotifierError as exc:
            log.warning("push to token %s… failed: %s", token[:8], exc)
            return PushResult(accepted=False, reason="provider_unavailable")

        if resp.status_code in (200, 201, 202):
            return PushResult(accepted=True)
        reason = _rejection_reason(resp)
        log.warning("relay rejected token %s… (%s)", token[:8], reason)
        return PushResult(accepted=False, reason=reason)

    # --------------- Internal ---------------
    def _request(self, json_body: Dict[str, Any]) -> httpx.Response:
        self._limiter.acquire()

        attempt = 0
        backoff = 0.5
        last_exc: Optional[Exception] = None
        while attempt < self._max_attempts:
            try:
                resp = self._client.post(PUSH_PATH, json=json_body)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                if resp.status_code not in (429, 500, 502, 503, 504):
                    return resp

                retry_after = None
                try:
                    body = resp.json()
                    ra = body.get("retry_after") if isinstance(body, dict) else None
                    if isinstance(ra, (int, float)):
                        retry_after = float(ra)
                except ValueError:
                    pass

                attempt += 1
                if attempt >= self._max_attempts:
                    raise AirNotifierApiError(f"HTTP {resp.status_code} from relay after {attempt} attempts")
                delay = retry_after if retry_after is not None else backoff
                self._sleep(min(delay, 10.0))
                backoff = min(backoff * 2, 8.0)
                continue

            # Transport error path
            attempt += 1
            if attempt < self._max_attempts:
                self._sleep(backoff)
                backoff = min(backoff * 2, 8.0)

        raise AirNotifierError("Failed request after retries") from last_exc


__all__ = [
    "AirNotifierClient",
    "AirNotifierError",
    "AirNotifierApiError",
    "build_push_body",
]
