"""
Event delivery: direct over a live connection, else push through device tokens.
"""

from .dispatcher import (
    DeliveryOutcome,
    DeliveryStatus,
    DirectDelivery,
    NotificationDispatcher,
    PushDelivery,
    Route,
    TokenResult,
)

__all__ = [
    "DeliveryOutcome",
    "DeliveryStatus",
    "DirectDelivery",
    "NotificationDispatcher",
    "PushDelivery",
    "Route",
    "TokenResult",
]
