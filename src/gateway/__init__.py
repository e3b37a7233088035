"""
Client-facing entry points: request parsing and the relay composition root.
"""

from .handler import Gateway
from .service import Relay

__all__ = ["Gateway", "Relay"]
