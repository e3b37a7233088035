from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ValidationError

from common.errors import KeyRelayError

from .requests import (
    AcceptRequest,
    InitiateRequest,
    RejectRequest,
    RevokeRequest,
    SessionLink,
    SessionQuery,
    SessionUnlink,
    TokenDelete,
    TokenRegistration,
)
from .service import Relay


log = logging.getLogger("keyrelay.gateway")

Response = Dict[str, Any]


def _error(code: str, message: str) -> Response:
    return {"ok": False, "error": code, "message": message}


class Gateway:
    """
    Client-facing surface: parses event payloads and calls into the relay.

    Events and required fields
    - key_exchange:request  requestId?, senderId, recipientId, publicKey, encryptedUserData
    - key_exchange:accept   requestId, recipientId, encryptedUserData
    - key_exchange:decline  requestId, recipientId
    - key_exchange:revoke   requestId, senderId
    - tokens:register       token, device, channel?, user_id?
    - sessions:link         token, session_id
    - sessions:replace      token, session_id (alias of link; link already moves the token)
    - sessions:unlink       token, session_id?
    - tokens:delete         token
    - sessions:tokens       session_id

    Unknown fields are ignored. Every call returns a dict with `ok`; failures
    carry an `error` code (`invalid_payload`, `unknown_event`, or a
    `KeyRelayError.code`).
    """

    def __init__(self, relay: Relay) -> None:
        self._relay = relay
        self._routes: Dict[str, Callable[[Dict[str, Any]], Response]] = {
            "key_exchange:request": self._initiate,
            "key_exchange:accept": self._accept,
            "key_exchange:decline": self._reject,
            "key_exchange:revoke": self._revoke,
            "tokens:register": self._register,
            "sessions:link": self._link,
            "sessions:replace": self._link,
            "sessions:unlink": self._unlink,
            "tokens:delete": self._delete,
            "sessions:tokens": self._tokens,
        }

    def handle(self, event: str, body: Optional[Dict[str, Any]]) -> Response:
        route = self._routes.get(event)
        if route is None:
            return _error("unknown_event", f"unsupported event: {event}")
        if not isinstance(body, dict):
            return _error("invalid_payload", "payload must be a JSON object")
        try:
            return route(body)
        except ValidationError as ve:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in ve.errors()})
            log.info("rejected %s payload; invalid fields: %s", event, ", ".join(fields))
            return _error("invalid_payload", f"invalid or missing fields: {', '.join(fields)}")
        except KeyRelayError as ke:
            log.info("%s refused: %s", event, ke)
            return _error(ke.code, str(ke))

    # -------- Transport hooks --------
    def connect(self, session_id: str, handle: Any) -> None:
        self._relay.sessions.mark_online(session_id, handle)

    def disconnect(self, session_id: str, handle: Any = None) -> None:
        self._relay.sessions.mark_offline(session_id, handle=handle)

    # -------- Routes --------
    def _initiate(self, body: Dict[str, Any]) -> Response:
        req = _parse(InitiateRequest, body)
        rid = self._relay.registry.initiate(
            req.sender_id,
            req.recipient_id,
            req.public_key,
            req.encrypted_user_data,
            request_id=req.request_id,
        )
        return {"ok": True, "requestId": rid, "status": self._status(rid)}

    def _accept(self, body: Dict[str, Any]) -> Response:
        req = _parse(AcceptRequest, body)
        self._relay.registry.accept(req.request_id, req.recipient_id, req.encrypted_user_data)
        return {"ok": True, "requestId": req.request_id, "status": self._status(req.request_id)}

    def _reject(self, body: Dict[str, Any]) -> Response:
        req = _parse(RejectRequest, body)
        self._relay.registry.reject(req.request_id, req.recipient_id)
        return {"ok": True, "requestId": req.request_id, "status": self._status(req.request_id)}

    def _revoke(self, body: Dict[str, Any]) -> Response:
        req = _parse(RevokeRequest, body)
        self._relay.registry.revoke(req.request_id, req.sender_id)
        return {"ok": True, "requestId": req.request_id, "status": self._status(req.request_id)}

    def _register(self, body: Dict[str, Any]) -> Response:
        req = _parse(TokenRegistration, body)
        self._relay.tokens.register(req.token, req.device, req.channel)
        if req.user_id:
            self._relay.tokens.link(req.token, req.user_id)
        return {"ok": True, "token": req.token}

    def _link(self, body: Dict[str, Any]) -> Response:
        req = _parse(SessionLink, body)
        self._relay.tokens.link(req.token, req.session_id)
        return {"ok": True, "token": req.token, "session_id": req.session_id}

    def _unlink(self, body: Dict[str, Any]) -> Response:
        req = _parse(SessionUnlink, body)
        removed = self._relay.tokens.unlink(req.token, req.session_id)
        return {"ok": True, "token": req.token, "unlinked": removed}

    def _delete(self, body: Dict[str, Any]) -> Response:
        req = _parse(TokenDelete, body)
        removed = self._relay.tokens.unregister(req.token)
        return {"ok": True, "token": req.token, "deleted": removed}

    def _tokens(self, body: Dict[str, Any]) -> Response:
        req = _parse(SessionQuery, body)
        records = sorted(self._relay.tokens.tokens_for(req.session_id), key=lambda r: r.token)
        return {
            "ok": True,
            "session_id": req.session_id,
            "tokens": [r.model_dump(mode="json", exclude={"session_id"}) for r in records],
        }

    def _status(self, request_id: str) -> Optional[str]:
        record = self._relay.registry.get(request_id)
        return record.status.value if record is not None else None


def _parse(model: type[BaseModel], body: Dict[str, Any]) -> Any:
    return model.model_validate(body)
