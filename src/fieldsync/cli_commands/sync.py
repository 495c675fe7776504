"""Upload CLI commands: one-shot sync and the long-running agent."""

import asyncio
import json
import signal

import typer

from fieldsync.config import Settings
from fieldsync.engine.orchestrator import SyncOrchestrator
from fieldsync.logging import configure_logging
from fieldsync.sync.network import NetworkStatus, StaticNetworkStatus


def _network(settings: Settings, assume_online: bool) -> NetworkStatus | None:
    # None lets the orchestrator probe the server's health endpoint
    if assume_online:
        return StaticNetworkStatus(online=True, connection=settings.assumed_connection_type)
    return None


async def _sync_once(settings: Settings, assume_online: bool) -> dict:
    orchestrator = SyncOrchestrator(settings, network=_network(settings, assume_online))
    try:
        await orchestrator.run_once()
        return {
            "metrics": orchestrator.engine.metrics.to_dict(),
            "queue": orchestrator.store.get_stats(),
        }
    finally:
        await orchestrator.stop()


def sync_command(
    ctx: typer.Context,
    assume_online: bool = typer.Option(
        False,
        "--assume-online",
        help="Skip the server health probe and treat the device as online",
    ),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output in JSON format"),
) -> None:
    """Upload everything pending, then exit.

    Stuck uploads are reset first; failed uploads are retried with backoff
    until they succeed or exhaust their retry budget.
    """
    settings: Settings = ctx.obj
    configure_logging(settings)

    result = asyncio.run(_sync_once(settings, assume_online))

    if output_json:
        typer.echo(json.dumps(result))
        return

    metrics = result["metrics"]
    queue = result["queue"]
    typer.echo(f"Uploaded: {metrics['completed']}  Failed: {metrics['failed']}")
    typer.echo(
        f"Queue: {queue['pending']} pending, {queue['uploaded']} uploaded, {queue['failed']} failed"
    )


async def _run_agent(settings: Settings, assume_online: bool) -> None:
    orchestrator = SyncOrchestrator(settings, network=_network(settings, assume_online))
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except NotImplementedError:
            # Windows event loops lack add_signal_handler; Ctrl+C still raises KeyboardInterrupt
            pass

    await orchestrator.start()
    try:
        await stop_event.wait()
    finally:
        await orchestrator.stop()


def run_command(
    ctx: typer.Context,
    assume_online: bool = typer.Option(
        False,
        "--assume-online",
        help="Skip the server health probe and treat the device as online",
    ),
) -> None:
    """Run the upload agent until interrupted.

    Watches connectivity, retries everything pending on reconnect and
    drains the queue periodically.
    """
    settings: Settings = ctx.obj
    configure_logging(settings)
    typer.echo("fieldsync agent started. Press Ctrl+C to stop.")
    try:
        asyncio.run(_run_agent(settings, assume_online))
    except KeyboardInterrupt:
        pass
    typer.echo("fieldsync agent stopped.")
