from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    REVOKED = "revoked"

    @property
    def terminal(self) -> bool:
        return self is not RequestStatus.PENDING


class KeyExchangeRequest(BaseModel):
    """
    One handshake offer between two sessions.

    Fields
    - request_id: unique id, client-suggested or assigned as "ker_<hex>".
    - sender_id / recipient_id: the two distinct session ids.
    - public_key: sender's exchange public key material (opaque).
    - encrypted_user_data: sender's payload; replaced by the recipient's on accept.
    - status: pending until exactly one terminal transition.
    - created_at / responded_at: UTC timestamps; responded_at is set on any
      terminal transition (including expiry) and drives retention.
    - last_delivery: status string of the latest dispatch for this request.
    - in_flight: dispatches started but not yet finished; purge skips these.

    Notes
    - The registry hands out copies (`model_copy()`), never the stored object.
    """

    request_id: str = Field(..., min_length=1)
    sender_id: str = Field(..., min_length=1)
    recipient_id: str = Field(..., min_length=1)
    public_key: str = Field(..., min_length=1)
    encrypted_user_data: str
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime
    responded_at: Optional[datetime] = None
    last_delivery: Optional[str] = None
    in_flight: int = 0

    def pair_key(self) -> str:
        return pair_key(self.sender_id, self.recipient_id)


def pair_key(a: str, b: str) -> str:
    """Order-independent key for a session pair."""
    lo, hi = sorted((a, b))
    return f"{lo}\x1f{hi}"
