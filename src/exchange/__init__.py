"""
Key-exchange handshake: request records, the registry enforcing their
lifecycle, and the expiry sweeper.
"""

from .models import KeyExchangeRequest, RequestStatus
from .registry import KeyExchangeRegistry
from .sweeper import ExpirySweeper, SweepSummary

__all__ = [
    "KeyExchangeRequest",
    "RequestStatus",
    "KeyExchangeRegistry",
    "ExpirySweeper",
    "SweepSummary",
]
