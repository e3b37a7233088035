from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field

from directory.models import DeviceTokenRecord
from exchange.models import KeyExchangeRequest


SNAPSHOT_VERSION = 1


class Snapshot(BaseModel):
    """
    Persistent relay state serialized to JSON and encrypted at rest.

    Fields
    - version: schema version of this object.
    - requests: every key-exchange request the registry still retains,
      terminal ones included until purged.
    - tokens: all registered device tokens with their session links.

    Notes
    - Session presence is not stored; connection handles do not survive a restart.
    """

    version: int = SNAPSHOT_VERSION
    requests: List[KeyExchangeRequest] = Field(default_factory=list)
    tokens: List[DeviceTokenRecord] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls()
