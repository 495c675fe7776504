"""Tests for structured JSON logging."""

import io
import json
import logging

import pytest

from fieldsync import __version__
from fieldsync.config import Settings
from fieldsync.logging import (
    DEVICE_CONTEXT,
    FieldSyncJsonFormatter,
    configure_logging,
    log_queue_run,
    log_state_change,
    log_upload_failed,
    log_upload_success,
    set_device_id,
    setup_logging,
)


@pytest.fixture
def json_logger():
    """Logger writing JSON lines to an in-memory stream."""
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(FieldSyncJsonFormatter())
    handler.addFilter(DEVICE_CONTEXT)
    logger = logging.getLogger("fieldsync.tests.json")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    logger.addHandler(handler)
    yield logger, stream
    logger.removeHandler(handler)


def _records(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines()]


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestFormatter:
    def test_standard_fields(self, json_logger):
        logger, stream = json_logger

        logger.info("hello")

        (record,) = _records(stream)
        assert record["message"] == "hello"
        assert record["level"] == "INFO"
        assert record["logger"] == "fieldsync.tests.json"
        assert record["client_version"] == __version__
        assert record["timestamp"].endswith("+00:00")

    def test_device_id_added_when_set(self, json_logger):
        logger, stream = json_logger
        set_device_id("tablet-7")
        try:
            logger.info("with device")
        finally:
            set_device_id(None)

        assert _records(stream)[0]["device_id"] == "tablet-7"


class TestAuditEvents:
    def test_upload_success(self, json_logger):
        logger, stream = json_logger

        log_upload_success(logger, 12, "srv-12", 153.456)

        (record,) = _records(stream)
        assert record["event"] == "upload_success"
        assert record["asset_id"] == 12
        assert record["server_id"] == "srv-12"
        assert record["duration_ms"] == 153.5

    def test_upload_failed_final(self, json_logger):
        logger, stream = json_logger

        log_upload_failed(logger, 3, "timeout", 5, final=True)

        (record,) = _records(stream)
        assert record["level"] == "WARNING"
        assert record["final"] is True
        assert record["attempt_count"] == 5

    def test_state_change(self, json_logger):
        logger, stream = json_logger

        log_state_change(logger, "running", "paused")

        (record,) = _records(stream)
        assert record["old_state"] == "running"
        assert record["new_state"] == "paused"


def test_setup_logging_writes_json_file(tmp_path, restore_root_logging):
    log_file = tmp_path / "logs" / "fieldsync.log"

    setup_logging("DEBUG", log_file=log_file, device_id="dev-1")
    logging.getLogger("fieldsync.sync").debug("file record")
    for handler in logging.getLogger().handlers:
        handler.flush()

    lines = log_file.read_text().splitlines()
    record = json.loads(lines[-1])
    assert record["message"] == "file record"
    assert record["device_id"] == "dev-1"
    set_device_id(None)


def test_queue_run_record(json_logger):
    logger, stream = json_logger

    log_queue_run(logger, dispatched=5, failed=1)

    (record,) = _records(stream)
    assert record["event"] == "queue_run"
    assert record["dispatched"] == 5
    assert record["failed"] == 1


def test_state_change_omits_missing_trigger(json_logger):
    logger, stream = json_logger

    log_state_change(logger, "paused", "running", trigger="resume")
    log_state_change(logger, "running", "paused")

    with_trigger, without_trigger = _records(stream)
    assert with_trigger["trigger"] == "resume"
    assert "trigger" not in without_trigger


def test_configure_logging_from_settings(tmp_path, restore_root_logging):
    settings = Settings(_env_file=None, log_level="warning", log_file=tmp_path / "fs.log")

    configure_logging(settings)

    root = logging.getLogger()
    assert root.level == logging.WARNING
    assert len(root.handlers) == 2
    assert all(isinstance(h.formatter, FieldSyncJsonFormatter) for h in root.handlers)
