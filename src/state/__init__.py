"""
Relay state persistence.

`Snapshot` captures the registry's requests and the token directory; the S3
store keeps it as Fernet-encrypted JSON with ETag-based optimistic locking.
"""

from .models import Snapshot
from .s3_store import OptimisticLockError, S3SnapshotStore

__all__ = ["Snapshot", "S3SnapshotStore", "OptimisticLockError"]
