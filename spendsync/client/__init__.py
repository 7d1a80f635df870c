"""Offline-capable client for the SpendSync API."""

from spendsync.client.cache import QueryCache
from spendsync.client.connectivity import ConnectivityMonitor
from spendsync.client.errors import ApiError, OfflineError
from spendsync.client.finance import FinanceClient
from spendsync.client.http import OfflineAwareClient, is_queued_response
from spendsync.client.mutations import QueuedMutation
from spendsync.client.pending import PendingRecord, PendingState, merge_pending
from spendsync.client.queue import SyncQueue, SyncResult, process_queue
from spendsync.client.store import JsonFileStore, SyncQueueStore

__all__ = [
    "ApiError",
    "ConnectivityMonitor",
    "FinanceClient",
    "JsonFileStore",
    "OfflineAwareClient",
    "OfflineError",
    "PendingRecord",
    "PendingState",
    "QueryCache",
    "QueuedMutation",
    "SyncQueue",
    "SyncQueueStore",
    "SyncResult",
    "is_queued_response",
    "merge_pending",
    "process_queue",
]
