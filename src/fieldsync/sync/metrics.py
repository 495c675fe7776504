"""Derived queue metrics pushed to observers after every state change."""

import logging
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable

logger = logging.getLogger(__name__)

UPLOAD_TIME_HISTORY = 100


@dataclass(frozen=True)
class QueueMetrics:
    """Snapshot of queue progress. Never persisted, never read by the scheduler."""

    total_queued: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    average_upload_time: float = 0.0  # milliseconds
    error_rate: float = 0.0
    last_sync_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_sync_time"] = self.last_sync_time.isoformat() if self.last_sync_time else None
        return data


MetricsListener = Callable[[QueueMetrics], None]


class MetricsTracker:
    """Holds the cumulative counters and the bounded upload-duration history."""

    def __init__(self, history: int = UPLOAD_TIME_HISTORY) -> None:
        self.completed = 0
        self.failed = 0
        self._upload_times: deque[float] = deque(maxlen=history)
        self._latest = QueueMetrics()
        self._listeners: list[MetricsListener] = []

    @property
    def latest(self) -> QueueMetrics:
        return self._latest

    def record_success(self, duration_ms: float) -> None:
        self.completed += 1
        self._upload_times.append(duration_ms)

    def record_failure(self) -> None:
        self.failed += 1

    def subscribe(self, listener: MetricsListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: MetricsListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, total_queued: int, in_progress: int, now: datetime) -> QueueMetrics:
        """Build a new snapshot and deliver it to subscribers."""
        finished = self.completed + self.failed
        snapshot = QueueMetrics(
            total_queued=total_queued,
            in_progress=in_progress,
            completed=self.completed,
            failed=self.failed,
            average_upload_time=(
                sum(self._upload_times) / len(self._upload_times) if self._upload_times else 0.0
            ),
            error_rate=self.failed / finished if finished else 0.0,
            last_sync_time=now,
        )
        self._latest = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.error("Error in metrics listener", exc_info=True)
        return snapshot
