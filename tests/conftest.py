"""Shared fixtures: fast settings, temporary stores and in-memory collaborators."""

import asyncio
import random

import pytest

from fieldsync.config import Settings
from fieldsync.engine.queue_engine import UploadQueueEngine
from fieldsync.sync.backoff import BackoffPolicy
from fieldsync.sync.events import SyncEventBus, SyncEventType
from fieldsync.sync.network import StaticNetworkStatus
from fieldsync.sync.store import AssetRecord, AssetStore
from fieldsync.sync.uploader import UploadResponse


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeTransport:
    """Transport double recording calls and the peak number of concurrent uploads."""

    def __init__(self, delay: float = 0.0, fail_with: Exception | None = None):
        self.delay = delay
        self.fail_with = fail_with
        self.responses: dict[int, UploadResponse] = {}
        self.calls: list[int] = []
        self.active = 0
        self.peak_active = 0
        self.peak_in_flight = 0
        self.engine: UploadQueueEngine | None = None

    async def upload(self, asset: AssetRecord) -> UploadResponse:
        self.calls.append(asset.id)
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        if self.engine is not None:
            self.peak_in_flight = max(self.peak_in_flight, len(self.engine.processing_assets))
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_with is not None:
                raise self.fail_with
            if asset.id in self.responses:
                return self.responses[asset.id]
            return UploadResponse(status="ok", server_id=f"srv-{asset.id}")
        finally:
            self.active -= 1


class FailingNetwork(StaticNetworkStatus):
    """Network source whose checks always raise (e.g. permission denied)."""

    async def is_online(self) -> bool:
        raise PermissionError("Unable to access network information")


class EventRecorder:
    """Collects every event emitted on a bus."""

    def __init__(self, bus: SyncEventBus):
        self.events = []
        for event_type in SyncEventType:
            bus.on(event_type, self.events.append)

    def of(self, event_type: SyncEventType):
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def make_settings(tmp_path):
    """Build Settings with tiny delays so engine tests finish quickly."""

    def _make(**overrides):
        values = {
            "data_dir": tmp_path / "data",
            "batch_pause_ms": 0,
            "base_backoff_ms": 1,
            "max_backoff_ms": 50,
            "min_backoff_ms": 1,
            "upload_timeout_ms": 2_000,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def store(tmp_path):
    s = AssetStore(tmp_path / "assets.db")
    yield s
    s.close()


@pytest.fixture
def network():
    return StaticNetworkStatus(online=True)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def make_engine(settings, store, transport, network):
    """Build an engine; keyword overrides replace the default collaborators or settings."""

    def _make(**overrides):
        config = overrides.pop("config", settings)
        upload_transport = overrides.pop("transport", transport)
        engine = UploadQueueEngine(
            config,
            overrides.pop("store", store),
            upload_transport,
            overrides.pop("network", network),
            backoff=BackoffPolicy(
                base_ms=config.base_backoff_ms,
                max_ms=config.max_backoff_ms,
                min_ms=config.min_backoff_ms,
                rng=random.Random(1234),
            ),
        )
        if isinstance(upload_transport, FakeTransport):
            upload_transport.engine = engine
        return engine

    return _make


def _add_asset(store: AssetStore, name: str = "photo.jpg") -> int:
    return store.insert_asset(name, "image/jpeg", data=b"\xff\xd8jpeg-bytes")


@pytest.fixture
def add_asset():
    """Helper inserting a small JPEG asset into a store."""
    return _add_asset


@pytest.fixture
def failing_network():
    return FailingNetwork()


@pytest.fixture
def record_events():
    """Attach an EventRecorder to a bus."""
    return EventRecorder
