"""Sync orchestrator: composition root for the store, uploader and queue engine."""

import asyncio
import logging
from datetime import timedelta
from typing import Any

from fieldsync.config import Settings
from fieldsync.engine.queue_engine import Transport, UploadQueueEngine
from fieldsync.sync import (
    AssetStore,
    AssetUploader,
    NetworkStatus,
    QueueChangeNotifier,
    ServerProbeNetworkStatus,
    SyncEventBus,
)

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """High-level owner of the upload pipeline.

    Opens the asset store (recovering uploads interrupted by a crash),
    builds the single UploadQueueEngine and runs the two background
    triggers: a network watcher that retries everything on reconnect, and
    a periodic background sync. This is the entry point the CLI and
    embedding applications use.

    Example:
        orchestrator = SyncOrchestrator(settings)
        await orchestrator.start()
        # ... run until stopped ...
        await orchestrator.stop()
    """

    def __init__(
        self,
        config: Settings,
        store: AssetStore | None = None,
        uploader: Transport | None = None,
        network: NetworkStatus | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Settings instance with all configuration
            store: Asset store (opened at config.database_path if omitted)
            uploader: Transport (AssetUploader for config.server_url if omitted)
            network: Connectivity source (server health probe if omitted)
        """
        self.config = config
        self._log = logger

        self.store = store or AssetStore(config.database_path)
        recovered = self.store.reset_stale_uploading(
            older_than=timedelta(seconds=config.stale_uploading_seconds)
        )
        if recovered:
            self._log.warning("Recovered %d stale uploading assets", recovered)

        self._owns_uploader = uploader is None
        self.uploader = uploader or AssetUploader(
            server_url=config.server_url,
            timeout=config.upload_timeout_seconds,
        )
        if network is None:
            if not isinstance(self.uploader, AssetUploader):
                raise ValueError("A network status source is required with a custom uploader")
            network = ServerProbeNetworkStatus(self.uploader, config.assumed_connection_type)
        self.network = network

        self.events = SyncEventBus()
        self.notifier = QueueChangeNotifier()
        self.engine = UploadQueueEngine(
            config,
            self.store,
            self.uploader,
            self.network,
            events=self.events,
            notifier=self.notifier,
        )

        self._running = False
        self._was_online: bool | None = None
        self._watcher_task: asyncio.Task | None = None
        self._background_task: asyncio.Task | None = None

    @property
    def is_online(self) -> bool | None:
        """Last observed connectivity, None before the first check."""
        return self._was_online

    async def start(self) -> None:
        """Start the network watcher and the periodic background sync."""
        if self._running:
            return
        self._running = True

        self._log.info("Starting sync orchestrator, data_dir=%s", self.config.data_path)
        self._watcher_task = asyncio.create_task(self._network_watcher())
        self._background_task = asyncio.create_task(self._background_sync())

    async def run_once(self) -> None:
        """Recover stuck uploads and drain the queue to completion."""
        await self.engine.retry_all_pending()
        await self.engine.wait_until_idle()

    async def check_network(self) -> None:
        """Observe connectivity once and react to transitions.

        The first observation only records the state. Offline -> online
        emits network:online and retries everything pending; online ->
        offline emits network:offline. A failing check counts as offline.
        """
        try:
            online = await self.network.is_online()
        except Exception as e:
            self._log.debug("Network check failed, assuming offline: %s", e)
            online = False

        previous = self._was_online
        self._was_online = online
        if previous is None:
            self._log.info("Network state: %s", "online" if online else "offline")
            return

        if online and not previous:
            self._log.info("Network reconnected, retrying all pending uploads")
            self.events.emit_network_online()
            if self.config.auto_upload_enabled:
                await self.engine.retry_all_pending()
        elif previous and not online:
            self._log.info("Network disconnected")
            self.events.emit_network_offline()

    async def _network_watcher(self) -> None:
        """Background worker polling connectivity."""
        while self._running:
            try:
                await self.check_network()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._log.error("Network watcher error: %s", e)

            await asyncio.sleep(self.config.network_poll_seconds)

    async def _background_sync(self) -> None:
        """Background worker draining the queue on a fixed interval."""
        while self._running:
            try:
                if self.config.auto_upload_enabled:
                    await self.engine.process_queue()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._log.error("Background sync error: %s", e)

            await asyncio.sleep(self.config.background_sync_interval_seconds)

    async def stop(self) -> None:
        """Stop the orchestrator gracefully.

        Cancels the background workers, pauses the engine, lets in-flight
        uploads finish and closes resources.
        """
        self._running = False

        for task in (self._watcher_task, self._background_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        await self.engine.shutdown()

        if self._owns_uploader and isinstance(self.uploader, AssetUploader):
            await self.uploader.close()
        self.store.close()

        self._log.info("Sync orchestrator stopped, completed=%d", self.engine.metrics.completed)

    def get_status(self) -> dict[str, Any]:
        """Get current orchestrator status.

        Returns:
            Dictionary with engine state, queue counts and connectivity
        """
        return {
            "running": self._running,
            "online": self._was_online,
            "engine": self.engine.get_status(),
            "queue": self.store.get_stats(),
            "data_dir": str(self.config.data_path),
        }
