"""Engine module for upload queue processing and orchestration."""

from fieldsync.engine.orchestrator import SyncOrchestrator
from fieldsync.engine.queue_engine import Transport, UploadQueueEngine

__all__ = ["SyncOrchestrator", "Transport", "UploadQueueEngine"]
