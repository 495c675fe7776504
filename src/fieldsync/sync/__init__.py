"""Sync module: asset store, upload transport, network status, events and metrics."""

from fieldsync.sync.backoff import BackoffPolicy
from fieldsync.sync.events import QueueChangeNotifier, SyncEvent, SyncEventBus, SyncEventType
from fieldsync.sync.exceptions import FieldSyncError, StoreError, UploadError, UploadTimeoutError
from fieldsync.sync.metrics import MetricsTracker, QueueMetrics
from fieldsync.sync.network import (
    ConnectionType,
    NetworkStatus,
    ServerProbeNetworkStatus,
    StaticNetworkStatus,
)
from fieldsync.sync.store import AssetRecord, AssetStatus, AssetStore
from fieldsync.sync.uploader import AssetUploader, UploadResponse

__all__ = [
    "AssetRecord",
    "AssetStatus",
    "AssetStore",
    "AssetUploader",
    "BackoffPolicy",
    "ConnectionType",
    "FieldSyncError",
    "MetricsTracker",
    "NetworkStatus",
    "QueueChangeNotifier",
    "QueueMetrics",
    "ServerProbeNetworkStatus",
    "StaticNetworkStatus",
    "StoreError",
    "SyncEvent",
    "SyncEventBus",
    "SyncEventType",
    "UploadError",
    "UploadResponse",
    "UploadTimeoutError",
]
