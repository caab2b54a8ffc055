"""
Realtime sync layer: live change channels, record rehydration, optimistic
writes, idempotent collection merging and the polling fallback.
"""

from ordersync.sync.channel import ChangeSubscriptionChannel
from ordersync.sync.collection import LiveCollection, SortOrder, is_stale
from ordersync.sync.errors import InvalidRecord, InvalidTransition, SyncError, WriteFailed
from ordersync.sync.optimistic import (
    ActionState,
    OptimisticReconciler,
    PendingAction,
    TempIdFactory,
)
from ordersync.sync.poller import PollingFallback
from ordersync.sync.rehydrator import DEFAULT_TABLES, RecordRehydrator, TableSpec

__all__ = [
    "ChangeSubscriptionChannel",
    "LiveCollection",
    "SortOrder",
    "is_stale",
    "SyncError",
    "InvalidRecord",
    "InvalidTransition",
    "WriteFailed",
    "ActionState",
    "OptimisticReconciler",
    "PendingAction",
    "TempIdFactory",
    "PollingFallback",
    "DEFAULT_TABLES",
    "RecordRehydrator",
    "TableSpec",
]
