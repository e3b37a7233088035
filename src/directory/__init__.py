"""
Session and device-token directories.

Both are in-memory maps guarded by per-key striped locks. The token directory
can be snapshotted into the encrypted state object (see `state`).
"""

from .models import Channel, DeviceTokenRecord, Platform, SessionPresence
from .sessions import SessionDirectory
from .tokens import TokenDirectory

__all__ = [
    "Channel",
    "DeviceTokenRecord",
    "Platform",
    "SessionPresence",
    "SessionDirectory",
    "TokenDirectory",
]
