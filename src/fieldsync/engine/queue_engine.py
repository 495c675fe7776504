"""Upload queue engine: batch reservation, bounded concurrency, retry and recovery."""

import asyncio
import logging
import time
from collections.abc import Coroutine
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from fieldsync.config import Settings
from fieldsync.logging import (
    log_queue_run,
    log_state_change,
    log_upload_failed,
    log_upload_retrying,
    log_upload_success,
)
from fieldsync.sync.backoff import BackoffPolicy
from fieldsync.sync.events import QueueChangeNotifier, SyncEventBus
from fieldsync.sync.metrics import MetricsListener, MetricsTracker, QueueMetrics
from fieldsync.sync.network import ConnectionType, NetworkStatus
from fieldsync.sync.store import AssetRecord, AssetStore
from fieldsync.sync.uploader import UploadResponse

logger = logging.getLogger(__name__)

# Margin added to backoff sleeps so a resubmitted asset is always past its
# next_attempt_at when the reservation runs.
RESUBMIT_GRACE_SECONDS = 0.01


class Transport(Protocol):
    """Performs one upload attempt for one asset."""

    async def upload(self, asset: AssetRecord) -> UploadResponse: ...


class UploadQueueEngine:
    """Drains the local asset store to the upload server.

    A single processing loop per engine reserves batches of eligible assets
    (FIFO by ID) and runs their uploads as independent asyncio tasks, never
    more than max_concurrent_uploads at once. Failed uploads go back to the
    pool with exponential backoff until the retry cap is reached.

    The loop is triggered by enqueue(), resume(), retry_all_pending() and by
    the orchestrator (reconnect, periodic sync). It is not reentrant:
    concurrent triggers while it runs are no-ops, and nothing raised inside
    it reaches the caller.

    Example:
        engine = UploadQueueEngine(settings, store, uploader, network)
        engine.events.on(SyncEventType.ASSET_UPLOADED, on_uploaded)
        engine.enqueue(asset_id)
    """

    def __init__(
        self,
        config: Settings,
        store: AssetStore,
        transport: Transport,
        network: NetworkStatus,
        events: SyncEventBus | None = None,
        notifier: QueueChangeNotifier | None = None,
        backoff: BackoffPolicy | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Settings with queue, retry and network policy
            store: Asset store (single source of truth for status)
            transport: Uploader performing one attempt per call
            network: Connectivity collaborator
            events: Event bus for per-asset events (created if omitted)
            notifier: Coarse change notifier (created if omitted)
            backoff: Retry backoff policy (built from config if omitted)
        """
        self.config = config
        self._store = store
        self._transport = transport
        self._network = network
        self.events = events or SyncEventBus()
        self.notifier = notifier or QueueChangeNotifier()
        self.backoff = backoff or BackoffPolicy(
            base_ms=config.base_backoff_ms,
            max_ms=config.max_backoff_ms,
            min_ms=config.min_backoff_ms,
        )

        self.processing_assets: dict[int, asyncio.Task] = {}
        self.is_processing = False
        self.is_paused = False
        self._metrics = MetricsTracker()
        self._background_tasks: set[asyncio.Task] = set()
        self._loop_tasks: set[asyncio.Task] = set()

    @property
    def metrics(self) -> QueueMetrics:
        """Latest metrics snapshot."""
        return self._metrics.latest

    def on_metrics(self, listener: MetricsListener) -> None:
        self._metrics.subscribe(listener)

    def off_metrics(self, listener: MetricsListener) -> None:
        self._metrics.unsubscribe(listener)

    # --- Triggers ---

    def enqueue(self, asset_id: int) -> None:
        """Hint that an asset is ready for upload.

        Emits a queued event and starts the processing loop in the background
        when it is idle and not paused. Must be called from the event loop
        thread; never raises.
        """
        self.update_metrics()
        self.events.emit_asset_queued(asset_id)

        if not self.is_processing and not self.is_paused:
            self._start_processing()

    def pause(self) -> None:
        """Stop starting new batches and uploads. In-flight uploads run to completion."""
        if self.is_paused:
            return
        self.is_paused = True
        log_state_change(logger, "running", "paused")

    def resume(self) -> None:
        """Allow processing again and start the loop."""
        if not self.is_paused:
            return
        self.is_paused = False
        log_state_change(logger, "paused", "running")
        self._start_processing()

    def _start_processing(self) -> None:
        try:
            task = self._spawn(self.process_queue(), name="fieldsync-process-queue")
        except RuntimeError:
            logger.warning("No running event loop, queue will be processed on the next trigger")
            return
        self._loop_tasks.add(task)
        task.add_done_callback(self._loop_tasks.discard)

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task:
        try:
            task = asyncio.get_running_loop().create_task(coro, name=name)
        except RuntimeError:
            coro.close()
            raise
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # --- Processing loop ---

    async def process_queue(self) -> None:
        """Reserve and upload batches until none remain or the engine is paused.

        Returns immediately if the loop is already running or the engine is
        paused. Never raises.
        """
        if self.is_processing or self.is_paused:
            logger.debug(
                "Queue already processing or paused: is_processing=%s, is_paused=%s",
                self.is_processing,
                self.is_paused,
            )
            return

        # Claimed before the first await so concurrent triggers see it
        self.is_processing = True
        started = False
        dispatched = 0
        failed_before = self._metrics.failed

        try:
            if not await self._can_proceed() or self.is_paused:
                return

            batch = self._reserve_batch()
            if batch:
                started = True
                self.events.emit_queue_started(len(batch))
                logger.info("Queue processing started, batch_size=%d", len(batch))

            while not self.is_paused:
                if not batch:
                    if not self.processing_assets:
                        break
                    # Settling uploads may return assets to the pool
                    await self._wait_for_slot()
                    if self.is_paused:
                        break
                    batch = self._reserve_batch()
                    continue

                dispatched += await self._dispatch_batch(batch)
                self.update_metrics()

                await asyncio.sleep(self.config.batch_pause_ms / 1000)
                if self.is_paused:
                    break
                batch = self._reserve_batch()
                if batch:
                    logger.debug("Reserved next batch of %d assets", len(batch))
        except Exception:
            logger.error("Queue processing aborted", exc_info=True)
        finally:
            self.is_processing = False
            self.update_metrics()
            if started:
                failed = self._metrics.failed - failed_before
                log_queue_run(logger, dispatched, failed)
                self.events.emit_queue_completed(dispatched, failed)

    async def _can_proceed(self) -> bool:
        """Apply the connectivity policy for this run."""
        try:
            if not await self._network.is_online():
                logger.info("Device is offline, skipping queue processing")
                return False
            if self.config.only_wifi:
                connection = await self._network.connection_type()
                if connection != ConnectionType.wifi:
                    logger.info("Not on Wi-Fi (%s), skipping queue processing", connection.value)
                    return False
        except Exception as e:
            if self.config.allow_proceed_if_network_check_fails:
                logger.warning("Network check failed, proceeding anyway: %s", e)
                return True
            logger.warning("Network check failed, treating as offline: %s", e)
            return False
        return True

    def _reserve_batch(self) -> list[AssetRecord]:
        return self._store.reserve_pending_or_failed(
            self.config.batch_size,
            max_retries=self.config.max_retries,
        )

    async def _dispatch_batch(self, batch: list[AssetRecord]) -> int:
        """Launch uploads for a reserved batch within the concurrency bound.

        If the engine is paused or the loop is cancelled part-way, the reserved
        assets that were not launched are released back to 'pending'.

        Returns:
            Number of uploads launched
        """
        launched = 0
        try:
            for asset in batch:
                while len(self.processing_assets) >= self.config.max_concurrent_uploads:
                    logger.debug(
                        "Max concurrent uploads (%d) reached, waiting",
                        self.config.max_concurrent_uploads,
                    )
                    await self._wait_for_slot()

                if self.is_paused:
                    break

                task = asyncio.create_task(self._run_upload(asset), name=f"fieldsync-upload-{asset.id}")
                self.processing_assets[asset.id] = task
                launched += 1
        finally:
            unlaunched = [asset.id for asset in batch[launched:]]
            if unlaunched:
                self._release(unlaunched)
        return launched

    def _release(self, asset_ids: list[int]) -> None:
        try:
            released = self._store.release_reserved(asset_ids)
        except Exception:
            logger.error("Could not release reserved assets %s", asset_ids, exc_info=True)
            return
        logger.info("Released %d reserved assets", released)

    async def _wait_for_slot(self) -> None:
        in_flight = list(self.processing_assets.values())
        if in_flight:
            await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)

    async def _run_upload(self, asset: AssetRecord) -> None:
        try:
            await self.upload_asset(asset)
        except Exception:
            logger.error("Unexpected error while uploading asset %s", asset.id, exc_info=True)
            self._release([asset.id])
        finally:
            if self.processing_assets.get(asset.id) is asyncio.current_task():
                del self.processing_assets[asset.id]

    # --- Per-asset orchestration ---

    async def upload_asset(self, asset: AssetRecord) -> None:
        """Run one upload attempt and resolve it into a status transition."""
        self.events.emit_asset_uploading(asset.id, attempt=asset.retries + 1)
        started = time.monotonic()

        try:
            response = await asyncio.wait_for(
                self._transport.upload(asset),
                timeout=self.config.upload_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = "Upload timeout - please check your connection"
        except Exception as e:
            error = str(e) or type(e).__name__
        else:
            if response.status == "ok" and response.server_id:
                duration_ms = (time.monotonic() - started) * 1000
                self._complete_upload(asset.id, response.server_id, duration_ms)
                return
            error = "Server returned error status"

        await self.handle_upload_failure(asset.id, error)

    def _complete_upload(self, asset_id: int, server_id: str, duration_ms: float) -> None:
        if not self._store.mark_uploaded(asset_id, server_id):
            logger.info("Asset %s was removed during upload, ignoring result", asset_id)
            return
        self._metrics.record_success(duration_ms)
        log_upload_success(logger, asset_id, server_id, duration_ms)
        self.events.emit_asset_uploaded(asset_id, server_id, duration_ms)
        self.update_metrics()

    async def handle_upload_failure(self, asset_id: int, error_message: str) -> None:
        """Count a failed attempt, then either schedule a retry or fail the asset."""
        max_retries = self.config.max_retries
        retries = self._store.increment_retry_capped(asset_id, max_retries)
        if retries is None:
            logger.info("Asset %s was removed during upload, ignoring failure", asset_id)
            return

        if retries >= max_retries:
            if not self._store.mark_failed(asset_id, error_message):
                logger.info("Asset %s was removed during upload, ignoring failure", asset_id)
                return
            self._metrics.record_failure()
            log_upload_failed(logger, asset_id, error_message, retries, final=True)
            self.events.emit_asset_failed(asset_id, error_message, final_error=True)
        else:
            delay_ms = self.backoff.delay_ms(retries)
            next_attempt_at = datetime.now(timezone.utc) + timedelta(milliseconds=delay_ms)
            if not self._store.set_pending(asset_id, next_attempt_at=next_attempt_at, error=error_message):
                logger.info("Asset %s was removed during upload, ignoring failure", asset_id)
                return
            log_upload_failed(logger, asset_id, error_message, retries)
            log_upload_retrying(logger, asset_id, retries, delay_ms)
            self.events.emit_asset_retrying(asset_id, retries, delay_ms, error_message)
            self._spawn(
                self._resubmit_after(asset_id, delay_ms / 1000),
                name=f"fieldsync-retry-{asset_id}",
            )

        self.update_metrics()

    async def _resubmit_after(self, asset_id: int, delay_seconds: float) -> None:
        await asyncio.sleep(delay_seconds + RESUBMIT_GRACE_SECONDS)
        self.enqueue(asset_id)

    # --- Recovery ---

    async def retry_all_pending(self) -> None:
        """Reset stuck uploads, notify observers and process the queue.

        Each step runs even if the previous one failed; never raises.
        """
        try:
            reset = self._store.reset_stuck_uploading(exclude=list(self.processing_assets))
            logger.info("Reset %d stuck uploading assets", reset)
        except Exception:
            logger.error("Error resetting uploading assets", exc_info=True)

        try:
            self.notifier.emit_changed()
            self.notifier.emit_retry_all()
        except Exception:
            logger.error("Error emitting queue change", exc_info=True)

        try:
            await self.process_queue()
        except Exception:
            logger.error("Error processing queue", exc_info=True)

    def retry_asset(self, asset_id: int) -> bool:
        """Explicitly reset one asset (fresh retry budget) and enqueue it.

        Returns:
            True if the asset was reset, False if it is missing, in flight or uploaded
        """
        if not self._store.reset_asset(asset_id):
            return False
        self.notifier.emit_changed()
        self.enqueue(asset_id)
        return True

    async def retry_failed(self) -> int:
        """Reset every terminally failed asset and process the queue. Never raises.

        Returns:
            Number of assets reset
        """
        reset = 0
        try:
            reset = self._store.reset_failed_assets()
            logger.info("Reset %d failed assets", reset)
        except Exception:
            logger.error("Error resetting failed assets", exc_info=True)
        self.notifier.emit_changed()
        await self.process_queue()
        return reset

    # --- Observation ---

    def update_metrics(self) -> QueueMetrics:
        """Recompute the metrics snapshot and push it to observers."""
        try:
            total_queued = self._store.count_queued()
        except Exception:
            logger.warning("Could not count queued assets", exc_info=True)
            total_queued = self._metrics.latest.total_queued
        return self._metrics.publish(
            total_queued=total_queued,
            in_progress=len(self.processing_assets),
            now=datetime.now(timezone.utc),
        )

    async def wait_until_idle(self) -> None:
        """Wait until the loop, in-flight uploads and scheduled retries have settled."""
        while True:
            current = asyncio.current_task()
            pending = [
                task
                for task in (*self._background_tasks, *self.processing_assets.values())
                if not task.done() and task is not current
            ]
            if not pending:
                return
            await asyncio.wait(pending)

    async def shutdown(self) -> None:
        """Pause, cancel scheduled retries and wait for in-flight uploads to finish.

        A running processing loop is not cancelled: once paused it releases
        its unlaunched reservations and exits on its own. Cancelled retries
        stay 'pending' in the store and are picked up by the next run.
        """
        self.pause()
        current = asyncio.current_task()
        scheduled = [
            task
            for task in self._background_tasks
            if task is not current and task not in self._loop_tasks
        ]
        for task in scheduled:
            task.cancel()
        loops = [task for task in self._loop_tasks if task is not current]
        pending = [*scheduled, *loops, *self.processing_assets.values()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def get_status(self) -> dict[str, Any]:
        return {
            "is_processing": self.is_processing,
            "is_paused": self.is_paused,
            "in_flight": sorted(self.processing_assets),
            "scheduled": len(self._background_tasks),
            "metrics": self.metrics.to_dict(),
        }
