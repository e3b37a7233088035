from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"


class Channel(str, Enum):
    DEFAULT = "default"
    SILENT = "silent"


class DeviceTokenRecord(BaseModel):
    """
    A push token issued by a platform push service.

    Frozen so sets of records can be handed to callers safely; the directory
    replaces records instead of mutating them.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    token: str = Field(..., min_length=1)
    platform: Platform
    channel: Channel = Channel.DEFAULT
    session_id: Optional[str] = Field(default=None, description="Linked session (None if unlinked)")


class SessionPresence(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    session_id: str
    connection_handle: Any = None
    last_seen_at: datetime
