from __future__ import annotations

from typing import Annotated, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StringConstraints

from directory.models import Channel, Platform


# Identifiers are trimmed. Key material and encrypted payloads are opaque and
# pass through byte for byte.
Ident = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
OptionalIdent = Annotated[str, StringConstraints(strip_whitespace=True)]


class _Incoming(BaseModel):
    # Clients add fields over time (timestamp, publicKey on accept, ...);
    # only the named ones are validated, the rest are dropped.
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class InitiateRequest(_Incoming):
    request_id: Optional[OptionalIdent] = Field(default=None, alias="requestId")
    sender_id: Ident = Field(..., alias="senderId")
    recipient_id: Ident = Field(..., alias="recipientId")
    public_key: str = Field(..., alias="publicKey", min_length=1)
    encrypted_user_data: str = Field(..., alias="encryptedUserData")


class AcceptRequest(_Incoming):
    request_id: Ident = Field(..., alias="requestId")
    recipient_id: Ident = Field(..., alias="recipientId")
    encrypted_user_data: str = Field(..., alias="encryptedUserData")


class RejectRequest(_Incoming):
    request_id: Ident = Field(..., alias="requestId")
    recipient_id: Ident = Field(..., alias="recipientId")


class RevokeRequest(_Incoming):
    request_id: Ident = Field(..., alias="requestId")
    sender_id: Ident = Field(..., alias="senderId")


class TokenRegistration(_Incoming):
    """`{token, device, channel, user_id}`; `user_id` links when present."""

    token: Ident
    device: Platform
    channel: Channel = Channel.DEFAULT
    user_id: Optional[OptionalIdent] = Field(default=None, validation_alias=AliasChoices("user_id", "session_id"))


class SessionLink(_Incoming):
    token: Ident
    session_id: Ident


class SessionUnlink(_Incoming):
    token: Ident
    session_id: Optional[OptionalIdent] = None


class TokenDelete(_Incoming):
    token: Ident


class SessionQuery(_Incoming):
    session_id: Ident
