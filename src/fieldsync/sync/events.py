"""In-process event bus for sync lifecycle events.

Lets observers (UI refresh, telemetry) react to asset state transitions
without polling the store. Listeners are isolated from each other and from
the emitter: an exception raised by one listener is logged and the remaining
listeners still run.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class SyncEventType(str, Enum):
    """Kinds of lifecycle events published by the engine."""

    ASSET_QUEUED = "asset:queued"
    ASSET_UPLOADING = "asset:uploading"
    ASSET_UPLOADED = "asset:uploaded"
    ASSET_FAILED = "asset:failed"
    ASSET_RETRYING = "asset:retrying"
    QUEUE_STARTED = "queue:started"
    QUEUE_COMPLETED = "queue:completed"
    NETWORK_ONLINE = "network:online"
    NETWORK_OFFLINE = "network:offline"


@dataclass
class SyncEvent:
    """Payload delivered to listeners."""

    type: SyncEventType
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    asset_id: int | None = None
    attempt: int | None = None
    duration: float | None = None  # milliseconds
    server_id: str | None = None
    error: str | None = None
    final_error: bool | None = None
    next_retry_in: float | None = None  # milliseconds
    extra: dict[str, Any] = field(default_factory=dict)


SyncEventListener = Callable[[SyncEvent], None]


def _call_isolated(listener: Callable[..., None], label: str, *args: Any) -> None:
    try:
        listener(*args)
    except Exception:
        logger.error("Error in listener for %s", label, exc_info=True)


class SyncEventBus:
    """Typed publish/subscribe keyed by SyncEventType.

    Listeners are invoked synchronously in registration order.

    Example:
        bus = SyncEventBus()
        bus.on(SyncEventType.ASSET_UPLOADED, lambda e: print(e.server_id))
        bus.emit_asset_uploaded(1, "srv1", 120.0)
    """

    def __init__(self) -> None:
        self._listeners: dict[SyncEventType, list[SyncEventListener]] = {
            event_type: [] for event_type in SyncEventType
        }

    def on(self, event_type: SyncEventType, listener: SyncEventListener) -> None:
        """Register a listener. Registering the same listener twice is a no-op."""
        listeners = self._listeners[event_type]
        if listener not in listeners:
            listeners.append(listener)

    def off(self, event_type: SyncEventType, listener: SyncEventListener) -> None:
        """Unregister a listener. Unknown listeners are ignored."""
        listeners = self._listeners[event_type]
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event_type: SyncEventType) -> int:
        return len(self._listeners[event_type])

    def emit(self, event: SyncEvent) -> None:
        """Deliver an event to every listener registered for its type."""
        # Copy so listeners may unsubscribe themselves while being called
        for listener in list(self._listeners[event.type]):
            _call_isolated(listener, event.type.value, event)

    def emit_asset_queued(self, asset_id: int) -> None:
        self.emit(SyncEvent(SyncEventType.ASSET_QUEUED, asset_id=asset_id))

    def emit_asset_uploading(self, asset_id: int, attempt: int = 1) -> None:
        self.emit(SyncEvent(SyncEventType.ASSET_UPLOADING, asset_id=asset_id, attempt=attempt))

    def emit_asset_uploaded(self, asset_id: int, server_id: str, duration: float) -> None:
        self.emit(
            SyncEvent(
                SyncEventType.ASSET_UPLOADED,
                asset_id=asset_id,
                server_id=server_id,
                duration=duration,
            )
        )

    def emit_asset_failed(self, asset_id: int, error: str, final_error: bool = False) -> None:
        self.emit(
            SyncEvent(
                SyncEventType.ASSET_FAILED,
                asset_id=asset_id,
                error=error,
                final_error=final_error,
            )
        )

    def emit_asset_retrying(
        self,
        asset_id: int,
        attempt: int,
        next_retry_in: float,
        error: str,
    ) -> None:
        self.emit(
            SyncEvent(
                SyncEventType.ASSET_RETRYING,
                asset_id=asset_id,
                attempt=attempt,
                next_retry_in=next_retry_in,
                error=error,
            )
        )

    def emit_queue_started(self, total_items: int) -> None:
        self.emit(SyncEvent(SyncEventType.QUEUE_STARTED, extra={"total_items": total_items}))

    def emit_queue_completed(self, total_processed: int, failed_count: int) -> None:
        self.emit(
            SyncEvent(
                SyncEventType.QUEUE_COMPLETED,
                extra={"total_processed": total_processed, "failed_count": failed_count},
            )
        )

    def emit_network_online(self) -> None:
        self.emit(SyncEvent(SyncEventType.NETWORK_ONLINE))

    def emit_network_offline(self) -> None:
        self.emit(SyncEvent(SyncEventType.NETWORK_OFFLINE))


class QueueChangeNotifier:
    """Coarse "something changed" signal for bulk refresh of queue views."""

    def __init__(self) -> None:
        self._changed: list[Callable[[], None]] = []
        self._retry_all: list[Callable[[], None]] = []

    def on_changed(self, listener: Callable[[], None]) -> None:
        if listener not in self._changed:
            self._changed.append(listener)

    def off_changed(self, listener: Callable[[], None]) -> None:
        if listener in self._changed:
            self._changed.remove(listener)

    def on_retry_all(self, listener: Callable[[], None]) -> None:
        if listener not in self._retry_all:
            self._retry_all.append(listener)

    def off_retry_all(self, listener: Callable[[], None]) -> None:
        if listener in self._retry_all:
            self._retry_all.remove(listener)

    def emit_changed(self) -> None:
        for listener in list(self._changed):
            _call_isolated(listener, "changed")

    def emit_retry_all(self) -> None:
        for listener in list(self._retry_all):
            _call_isolated(listener, "retry_all")
