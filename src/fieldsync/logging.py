"""Structured JSON logging for the fieldsync client.

Every record is emitted as one JSON object stamped with the client version
and, once known, the device id. Upload outcomes and queue state changes go
through the audit helpers below so their field names stay stable for log
consumers. Payload bytes are never logged.

Usage:
    from fieldsync.logging import configure_logging

    configure_logging(settings)
    logging.getLogger("fieldsync.engine").info("started", extra={"batch_size": 5})
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pythonjsonlogger import jsonlogger

from fieldsync import __version__

if TYPE_CHECKING:
    from fieldsync.config import Settings

LOG_FILE_MAX_BYTES = 10_000_000  # 10MB
LOG_FILE_BACKUP_COUNT = 5


class DeviceContextFilter(logging.Filter):
    """Attaches client_version and device_id attributes to each record."""

    def __init__(self, device_id: str | None = None) -> None:
        super().__init__()
        self.device_id = device_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.client_version = __version__
        if self.device_id:
            record.device_id = self.device_id
        return True


# Shared by every handler installed by setup_logging()
DEVICE_CONTEXT = DeviceContextFilter()


class FieldSyncJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with a UTC ISO timestamp, level and logger name on every record."""

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict,
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record.setdefault("message", record.getMessage())


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    device_id: str | None = None,
    max_bytes: int = LOG_FILE_MAX_BYTES,
    backup_count: int = LOG_FILE_BACKUP_COUNT,
) -> None:
    """Route all logging through JSON handlers on the root logger.

    Existing root handlers are replaced. Records go to stderr, keeping
    stdout free for CLI output, and to a rotating file when log_file is set.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path for a rotating log file
        device_id: Identifier for this device, added to every record
        max_bytes: Max size per log file before rotation
        backup_count: Number of rotated files to keep
    """
    if device_id:
        DEVICE_CONTEXT.device_id = device_id

    formatter = FieldSyncJsonFormatter()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count))

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(DEVICE_CONTEXT)
        root_logger.addHandler(handler)


def configure_logging(settings: Settings) -> None:
    """Apply the logging options of a Settings instance."""
    setup_logging(settings.log_level, settings.log_file)


def set_device_id(device_id: str | None) -> None:
    """Set (or clear) the device identifier added to log records."""
    DEVICE_CONTEXT.device_id = device_id


# --- Audit events ---


def _audit(logger: logging.Logger, level: int, message: str, event: str, **fields: Any) -> None:
    extra = {"event": event}
    extra.update((key, value) for key, value in fields.items() if value is not None)
    logger.log(level, message, extra=extra)


def log_upload_success(
    logger: logging.Logger,
    asset_id: int,
    server_id: str,
    duration_ms: float,
) -> None:
    """Log a successful upload.

    Args:
        logger: Logger instance
        asset_id: Local asset identifier
        server_id: Identifier assigned by the server
        duration_ms: Duration of the attempt in milliseconds
    """
    _audit(
        logger,
        logging.INFO,
        "Upload successful",
        "upload_success",
        asset_id=asset_id,
        server_id=server_id,
        duration_ms=round(duration_ms, 1),
    )


def log_upload_failed(
    logger: logging.Logger,
    asset_id: int,
    error: str,
    attempt_count: int,
    final: bool = False,
) -> None:
    """Log a failed upload attempt.

    Args:
        logger: Logger instance
        asset_id: Local asset identifier
        error: Error description (never the payload)
        attempt_count: Failed attempts so far
        final: True when the retry budget is exhausted
    """
    _audit(
        logger,
        logging.WARNING,
        "Upload failed",
        "upload_failed",
        asset_id=asset_id,
        error=error,
        attempt_count=attempt_count,
        final=final,
    )


def log_upload_retrying(
    logger: logging.Logger,
    asset_id: int,
    attempt: int,
    delay_ms: float,
) -> None:
    _audit(
        logger,
        logging.INFO,
        "Upload retry scheduled",
        "upload_retrying",
        asset_id=asset_id,
        attempt=attempt,
        delay_ms=round(delay_ms, 1),
    )


def log_queue_run(logger: logging.Logger, dispatched: int, failed: int) -> None:
    """Log the outcome of one processing-loop run."""
    _audit(
        logger,
        logging.INFO,
        "Queue run finished",
        "queue_run",
        dispatched=dispatched,
        failed=failed,
    )


def log_state_change(
    logger: logging.Logger,
    old_state: str,
    new_state: str,
    trigger: str | None = None,
) -> None:
    """Log a queue state transition (e.g. running -> paused)."""
    _audit(
        logger,
        logging.INFO,
        "State changed",
        "state_change",
        old_state=old_state,
        new_state=new_state,
        trigger=trigger,
    )
