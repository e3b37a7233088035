"""
Shared building blocks for keyrelay.

Modules:
- airnotifier: AirNotifier push relay client with rate limiting and retries
- config: settings from env vars and SSM Parameter Store
- contracts: event kinds and the transport / push-provider protocols
- errors: validation error taxonomy
- locks: striped per-key locks
"""

__all__ = [
    "airnotifier",
    "config",
    "contracts",
    "errors",
    "locks",
]
