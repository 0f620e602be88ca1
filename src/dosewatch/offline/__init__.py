"""Client-side offline queue and sync reconciler."""

from dosewatch.offline.models import (
    AppliedAction,
    FlushResult,
    QueuedAction,
    QueuedOperation,
    QueueState,
    RejectedAction,
    SyncRejection,
)
from dosewatch.offline.queue import OfflineQueue, RetryPolicy
from dosewatch.offline.store import QueueStore, SqliteQueueStore
from dosewatch.offline.transport import (
    HttpSyncTransport,
    SyncOutcome,
    SyncTransport,
    TransientSyncError,
)

__all__ = [
    "AppliedAction",
    "FlushResult",
    "HttpSyncTransport",
    "OfflineQueue",
    "QueueState",
    "QueueStore",
    "QueuedAction",
    "QueuedOperation",
    "RejectedAction",
    "RetryPolicy",
    "SqliteQueueStore",
    "SyncOutcome",
    "SyncRejection",
    "SyncTransport",
    "TransientSyncError",
]
